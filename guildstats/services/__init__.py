"""
Engine Services
Intake, dispatch, aggregation, rollup, retention and queries
"""
