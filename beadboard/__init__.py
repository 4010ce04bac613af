# Beadboard: kanban board over a Beads issue database
#
# Components:
#   schema.py      - Data model (BoardCard, IssueStatus, BoardColumn, classify)
#   errors.py      - Error taxonomy and message sanitization
#   adapter.py     - BoardAdapter contract shared by both backends
#   store.py       - Embedded SQLite adapter (debounced atomic saves)
#   process.py     - bd CLI adapter (batched, circuit-broken)
#   circuit.py     - Circuit breaker for bd calls
#   daemon.py      - bd daemon status and lifecycle
#   validation.py  - Envelope schemas and field validation
#   markdown.py    - Markdown safety checks for long text
#   bridge.py      - Per-panel message bridge
#   client.py      - Per-panel cache, loader and pending requests
#   watcher.py     - watchdog-backed file watching
#   config.py      - YAML configuration
