"""Curator core package.

Modules:
- analysis: cover metrics extraction and scoring
- audit: parallel cover audit and persisted report
- history: append-only cover fix history
- remediation: single and batch cover fixes
- sources: SteamGridDB asset source
- cache: local cover cache
- config: INI parsing and config object
"""
