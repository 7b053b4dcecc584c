"""Tool-calling chat sessions behind a chat-completions compatible API."""
