"""Decision-time components: backoff, remediation and the retry engine.

Nothing is re-exported here; ``rebound.core.errors`` imports
``rebound.execution.remediation`` while it is itself initializing.
"""
