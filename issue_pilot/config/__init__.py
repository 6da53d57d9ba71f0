"""Configuration management for the orchestration engine."""
