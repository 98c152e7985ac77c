"""Compliance evaluation and reporting for specimen handling.

Modules:
- policy: Configurable thresholds and penalties
- requirements: Catalog of regulatory requirements (CAP, CLIA, custom YAML)
- evaluator: Baseline and per-requirement rules applied to one trail
- reporter: Time-windowed compliance reports with trends and recommendations
"""
