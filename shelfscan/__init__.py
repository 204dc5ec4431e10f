"""Shelfscan core package.

Modules:
- classifier / parser: path classification and filename parsing
- archive / comicinfo: archive handles and sidecar metadata
- walker / pipeline: library enumeration and per-file processing
- assembler / reconciler: series grouping and catalog diffing
- orchestrator / events: scan runs and progress notifications
- store / database / models: SQLite catalog via SQLModel
- monitor: Watchdog-based filesystem monitoring
- config: INI parsing and settings objects
"""
