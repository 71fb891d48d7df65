"""tabvault - Tab session manager.

Modules:
    - ringbuf: Fixed-capacity ring buffer (change log, on-change pool)
    - session: Captured window set, search filters, edits
    - restore: Restoration engine with loaded/discarded/pending strategies
    - pending: Deferred-load tabs and their content probe
    - rotation: Time-tiered backup rotation groups
    - store: Session store with undo/redo snapshots
    - daemon: Host events, timers and debounced on-change backups
    - commands: Message-verb command surface
    - web: FastAPI routes over the command surface
"""

__version__ = "0.1.0"
