"""Memory store, context retrieval, cleanup and automatic memory capture."""
