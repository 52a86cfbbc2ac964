"""
Session pipeline: segment building, stitching, rollups, finalization and
the rebuild orchestrator that runs them in order.
"""
