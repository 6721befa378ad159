"""progdeploy status view — pure read-only projection over the DeployLedger.

Modules
-------
projection
    ``StatusProjection`` reads the ledger and produces ``AttemptSnapshot``
    and ``ProgramStatus`` models, frozen point-in-time views.
renderer
    ``StatusRenderer`` turns snapshots, outcomes and open-buffer listings
    into Rich renderables for terminal display.
"""
