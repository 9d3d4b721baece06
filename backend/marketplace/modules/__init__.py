"""
Lifecycle modules.

Each bounded context (identity, verification, bidding, projects) lives under
`backend/marketplace/modules/*`. Routers call the services here rather than
invoking repositories directly.
"""
