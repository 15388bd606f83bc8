"""AI-conversation blocks: turn model, state machine and follow-up question generation."""
