"""Built-in deployment actions, one module per action type."""
