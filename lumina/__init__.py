"""
Lumina Referrals — Referral Program Service for the Lumina Platform
=====================================================================
Owns the referral program: tiered rewards with time decay, anti-Sybil
scoring, daily/monthly/lifetime caps, and the lifecycle of a referral
from application through review, expiry and payout.

Package layout::

    lumina/
    ├── config.py          # YAML → typed Python config
    ├── constants.py       # Disposable domains, code alphabet, currency
    ├── errors.py          # Domain exceptions raised by services
    ├── database/
    │   ├── engine.py      # SQLAlchemy engine + async helper
    │   ├── models.py      # ORM models (users projection + referral tables)
    │   └── seed.py        # Default settings + tier ladder seeder
    ├── engine/
    │   ├── program.py     # ReferralSettings / TierInfo + defaults
    │   ├── reward.py      # Tier lookup, decay, reward breakdown
    │   └── anti_sybil.py  # Validation scoring + rate-limit windows
    ├── services/
    │   ├── referral_service.py  # Settings/tier reads, stats, create, lifecycle
    │   └── admin_service.py     # Audit-logged admin mutations
    └── api/
        ├── __main__.py    # `python -m lumina.api` (uvicorn on api_port)
        ├── main.py        # FastAPI app
        ├── deps.py        # JWT + session dependencies
        ├── rate_limit.py  # DB-backed sliding-window limiter
        └── routes/        # Referral + admin REST endpoints
"""

__version__ = "0.1.0"
