"""
Blacklink Accounts - Identity Session & Entitlement Core
=========================================================

Builds the per-session view of "who is this user and what are they entitled to"
from independently fetched records in the remote document store.

Components:
- Entitlement & Token Ledger (subscription tier, metered AI credits)
- Username Registry (globally unique handles under concurrent claims)
- Session Orchestrator (fail-soft snapshot rebuilt on every identity change)

Presentation concerns (pages, theming, routing) live in the web client.
"""

__version__ = "1.0.0"
__product__ = "Blacklink Accounts"
