"""
Auth service infrastructure layer.

Brings up the service's dependencies before it accepts traffic:
- datastore: pooled connection, retried in the background on failure
- cache: fail-fast write/read handshake
- broker: TLS producer session, bounded retry then fatal
"""

__version__ = "0.1.0"
