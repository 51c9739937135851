"""
Kudos — Sales-Activity Gamification Bridge
===========================================
Turns CRM call dispositions, telephony call-completion webhooks and
uploaded spreadsheet batches into XP and badges on an external
gamification service, exactly once per real-world event.

Package layout::

    kudos/
    ├── config.py          # YAML → typed Python config, env secrets & maps
    ├── constants.py       # Shared helpers (dates, text folding, JSON env)
    ├── database/
    │   ├── engine.py      # SQLAlchemy engine + async helper
    │   └── models.py      # Import key index + manual adjustment audit
    ├── engine/
    │   ├── events.py      # NormalizedEvent + categories
    │   ├── normalize.py   # Source payload → NormalizedEvent
    │   ├── signatures.py  # CRM v3 / telephony HMAC verification
    │   ├── seen.py        # TTL seen-set (webhook dedup)
    │   ├── actors.py      # Actor resolution strategies
    │   ├── labels.py      # Tenant label sets + matching
    │   ├── reward.py      # Pure reward rules
    │   └── ledger.py      # Step-based incremental ledger
    ├── services/
    │   ├── event_log.py   # Append-only JSONL event log
    │   ├── dispatch.py    # Serialized, spaced dispatch queue
    │   ├── gamification.py # External gamification API client
    │   ├── pipeline.py    # Intake → reward → ledger → dispatch
    │   ├── batch_import.py # Spreadsheet import with persistent key index
    │   ├── throttle.py    # Token-bucket limiter
    │   ├── idempotency.py # TTL response cache
    │   ├── adjustment_service.py # Manual XP adjustments
    │   └── bootstrap.py   # Wires the components together
    └── api/
        ├── main.py        # FastAPI app
        ├── deps.py        # Dependency injection + auth guards
        └── routes/        # Webhooks, imports, admin
"""

__version__ = "0.1.0"
