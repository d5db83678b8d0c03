"""VBot: memory-aware streaming coach chat."""
