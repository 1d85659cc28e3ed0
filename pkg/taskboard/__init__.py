# Taskboard: real-time task synchronization and board reconciliation
#
# Components:
#   schema.py      - Data model (Task, Member, Project, MoveIntent, LiveUpdateEvent)
#   errors.py      - Error taxonomy shared by server, gateway and client
#   config.py      - YAML + environment configuration
#   store.py       - SQLite persistence (users, projects, members, tasks)
#   broadcaster.py - Per-project live update fan-out
#   gateway.py     - Persistence gateway (in-process and HTTP)
#   protocol.py    - Move/transition rules for drag-drop and status changes
#   reconciler.py  - Client-side board view and reconciliation engine
#   transport.py   - Live channel transports (in-process, Server-Sent Events)
#   session.py     - Explicit client session context
#   client.py      - UI-facing board client
#   ratelimit.py   - Sliding-window request limiter
