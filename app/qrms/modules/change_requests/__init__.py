"""
Change Request Engine.

PENDING -> APPROVED | REJECTED; REJECTED -> RESUBMITTED | CANCELLED.
Approving applies the change to the item store in the reviewer's transaction.
"""
