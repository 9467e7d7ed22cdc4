"""Static analysis and data-protection components: code validation, PII tokenization, env-var policy."""
