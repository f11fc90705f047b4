"""Stream reconciliation client for LangGraph-style agent threads."""
