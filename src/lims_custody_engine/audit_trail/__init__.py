"""Audit trail derivation for tracked specimens.

Turns a specimen's append-only audit record log into a derived trail with
custody integrity, quality scores and a compliance verdict.

Modules:
- models: Frozen trail, gap, handoff, metric and violation types
- builder: Full and incremental trail derivation
- cache: Per-specimen trail cache
- stream: Live broadcast of recorded events and compliance changes
"""
