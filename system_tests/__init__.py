"""
Docker-backed system verification.

Boots a real control plane and client fleet once per session and runs
every connectivity sub-case as its own pytest item, so failures are
attributed to a single hostname or pair. Logs are preserved only when
the session fails.

Opt in with MESHVERIFY_SYSTEM_TESTS=1.
"""
