"""
Quality Document Approval Engine.

PENDING_QC -> PENDING_PM -> COMPLETED, with REJECTED and a REVISION_REQUIRED
loop that always restarts at PENDING_QC.
"""
