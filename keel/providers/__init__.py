"""
Providers: external collaborators behind stable interfaces.

- llm: language model clients
- storage: session log backends
- tools: tool contract, registry and reference tools
"""
