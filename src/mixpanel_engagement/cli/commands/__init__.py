"""CLI command groups for mixpanel_engagement.

Command groups:
- auth: Account management
- sync: Mixpanel -> warehouse syncs
- query: Local SQL over the warehouse

Plus the top-level `process` command for saved raw payloads.
"""
