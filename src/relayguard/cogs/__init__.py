"""
Cogs package for RelayGuard.

Contains:
- antispam: Spam filtering for chat messages and the !antispam command
"""
