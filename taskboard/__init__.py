# Taskboard: collaborative board with optimistic local edits
#
# Components:
#   schema.py       - Entities (Board, Column, Task, Tag, ChangeEvent) and enums
#   ordering.py     - Dense position reassignment for moves
#   state.py        - State containers (board, tags, chat)
#   engine.py       - Optimistic mutation engine with rollback
#   store.py        - SQLite persistence and change log
#   backend.py      - Async persistence contract, SQLite adapter
#   http_backend.py - Persistence contract over the board server API
#   reconciler.py   - Change feed and collaborator change merging
#   intent.py       - Natural-language intent service and operation models
#   bridge.py       - Intent-to-operation bridge
#   session.py      - Wiring for one client session
#   config.py       - YAML config and logging setup
