"""Commands that sit beside the build: local preview and remote deploy."""
