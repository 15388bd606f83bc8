"""Workflow connections between form blocks: data model, rule engine, authoring and graph helpers."""
