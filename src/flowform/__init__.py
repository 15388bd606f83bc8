"""
Core library for flowform-service.

This package holds the branching rule engine, the AI-conversation state machine
and the persistence commands they emit.

- Runtime package: `src/flowform/`
- HTTP entrypoint: `api/main.py`
"""
