"""profilesync - desktop settings and dotfile synchronization.

Packages:
- core: Shared configuration and types
- sync: Dispatcher, change tokens, orchestrator, debouncer, engine
- backends: GitHub, WebDAV and Google Drive storage backends
- cli: Command-line interface
"""

__version__ = "0.4.0"
