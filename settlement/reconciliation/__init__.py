"""
Reconciliation core: matching engine, repair primitives, sweeper and the
transaction state machine.
"""
