"""
Mahber — Community Engagement Core
===================================
Server-side engagement subsystem for a chapter-based youth learning
community: moderates forum content, awards badges, maintains leaderboards,
protects youth and anonymous members on every outbound projection, and
keeps forum content searchable.

Package layout::

    mahber/
    ├── config.py          # YAML → typed Python config
    ├── constants.py       # Roles, event types, time helpers
    ├── context.py         # ServiceContext built once per process
    ├── errors.py          # Error kinds + {success, data, error} envelope
    ├── database/
    │   ├── engine.py      # SQLAlchemy engine + async helper
    │   ├── models.py      # All ORM models
    │   └── seed.py        # Default badge catalogue
    ├── engine/            # Pure logic, no I/O
    │   ├── classifier.py  # Content scoring rules
    │   ├── text.py        # Sanitize / normalize / keywords
    │   ├── access.py      # Forum + private topic visibility
    │   ├── privacy.py     # Youth + anonymity projections
    │   ├── badges.py      # Badge requirement handlers
    │   ├── ranking.py     # Leaderboard horizons + periods
    │   └── updates.py     # Typed queue messages
    ├── services/          # Database-backed operations
    │   ├── gate.py              # Rate & history gate
    │   ├── security_monitor.py  # Violation sliding windows
    │   ├── moderation_service.py
    │   ├── ledger_service.py
    │   ├── update_queue.py      # Queue tables + stale items
    │   ├── achievement_service.py
    │   ├── update_processor.py  # Badge + leaderboard queues
    │   ├── leaderboard_service.py
    │   ├── privacy_service.py
    │   ├── search_service.py
    │   ├── archive_service.py
    │   ├── forum_service.py     # Forum API operations
    │   ├── community_service.py # Leaderboard, privacy, badge operations
    │   └── publisher_service.py
    ├── api/               # FastAPI transport
    └── worker/            # ``python -m mahber.worker`` periodic jobs
"""

__version__ = "0.1.0"
