"""
Audit/Lineage Reader: read-only timelines and dashboard counts.
"""
