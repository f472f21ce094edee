"""
Resolution Bounded Context
===========================

Records ticket resolutions locally and pushes them to the external
ticketing system with bounded retry and a durable pending-update ledger.
"""
