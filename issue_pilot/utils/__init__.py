"""Shared utilities: retry decorator and logging setup."""
