"""
Backup and restore app for the POS platform.

This app provides:
- Encrypted (AES-256) PostgreSQL backups with SHA-256 integrity checks
- Manual, scheduled and automatic (event-triggered) backups
- Verified restores with an automatic safety backup of the target
- Retention pruning of expired backups
"""
