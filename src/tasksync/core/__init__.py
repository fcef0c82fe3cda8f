"""Process-wide concerns: structured logging and tracing."""
