"""FileReadTool tests"""

import pytest

from keel.errors import ToolExecutionError
from keel.providers.tools.builtin.file_read_tool import FileReadTool


class TestFileReadTool:
    """FileReadTool tests"""

    @pytest.fixture
    def tool(self, tmp_path):
        return FileReadTool(base_dir=str(tmp_path), max_lines=50)

    @pytest.fixture
    def small_file(self, tmp_path):
        path = tmp_path / "small.txt"
        path.write_text("Line 1\nLine 2\nLine 3\nLine 4\nLine 5\n")
        return path

    @pytest.fixture
    def large_file(self, tmp_path):
        path = tmp_path / "large.txt"
        path.write_text("".join(f"Line {i}\n" for i in range(1, 101)))
        return path

    def test_concurrency_safe(self, tool):
        assert tool.name == "read_file"
        assert tool.is_concurrency_safe() is True

    @pytest.mark.asyncio
    async def test_read_whole_file(self, tool, small_file):
        output = await tool.execute({"path": "small.txt"})

        assert output.content == "Line 1\nLine 2\nLine 3\nLine 4\nLine 5"
        assert output.details == {"path": str(small_file), "total_lines": 5}

    @pytest.mark.asyncio
    async def test_absolute_path(self, tool, small_file):
        output = await tool.execute({"path": str(small_file)})
        assert output.content.startswith("Line 1")

    @pytest.mark.asyncio
    async def test_offset_and_limit(self, tool, large_file):
        output = await tool.execute({"path": "large.txt", "offset": 10, "limit": 3})

        assert output.content.startswith("Line 10\nLine 11\nLine 12")
        assert "[Showing lines 10-12 of 100. Use offset=13 to continue.]" in output.content

    @pytest.mark.asyncio
    async def test_line_cap_applies_without_limit(self, tool, large_file):
        output = await tool.execute({"path": "large.txt"})

        assert "Line 50" in output.content
        assert "Line 51\n" not in output.content
        assert "Use offset=51 to continue." in output.content

    @pytest.mark.asyncio
    async def test_offset_beyond_end(self, tool, small_file):
        with pytest.raises(ToolExecutionError, match="beyond end of file"):
            await tool.execute({"path": "small.txt", "offset": 99})

    @pytest.mark.asyncio
    async def test_missing_file(self, tool):
        with pytest.raises(ToolExecutionError, match="File not found: nope.txt"):
            await tool.execute({"path": "nope.txt"})

    @pytest.mark.asyncio
    async def test_missing_path(self, tool):
        with pytest.raises(ToolExecutionError, match="path"):
            await tool.execute({})
