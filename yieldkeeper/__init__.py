"""
YieldKeeper - unattended capital allocation controller for a custodial vault

Observes strategy positions and external yield data, computes a target
allocation and converges on it with ordered withdraw/deposit transactions.
"""

__version__ = "1.0.0"
