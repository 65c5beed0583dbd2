"""
Database access for SecureAuth.

This package provides:
- auth_db: accounts, bearer sessions, login failures and schema creation
- credential_store: profiles, two-factor secrets and passkeys
- models: typed records for those tables
"""
