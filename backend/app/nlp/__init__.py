"""Natural-language front door: LLM intent extraction and normalization."""
