"""
Central constants for the QRMS workflow engines.
"""
from __future__ import annotations

# Roles supplied by the identity provider
ROLE_VIEWER = "VIEWER"
ROLE_EDITOR = "EDITOR"
ROLE_INSPECTOR = "INSPECTOR"
ROLE_ADMIN = "ADMIN"
ROLES = frozenset({ROLE_VIEWER, ROLE_EDITOR, ROLE_INSPECTOR, ROLE_ADMIN})

# Change request kinds
CR_CREATE = "CREATE"
CR_UPDATE = "UPDATE"
CR_DELETE = "DELETE"
CR_RESTORE = "RESTORE"
CR_PROJECT_UPDATE = "PROJECT_UPDATE"
CR_PROJECT_DELETE = "PROJECT_DELETE"
CR_PROJECT_COPY = "PROJECT_COPY"
CR_FILE_CREATE = "FILE_CREATE"
CR_FILE_UPDATE = "FILE_UPDATE"
CR_FILE_DELETE = "FILE_DELETE"
ITEM_KINDS = frozenset({CR_CREATE, CR_UPDATE, CR_DELETE, CR_RESTORE})
PROJECT_KINDS = frozenset({CR_PROJECT_UPDATE, CR_PROJECT_DELETE, CR_PROJECT_COPY})
FILE_KINDS = frozenset({CR_FILE_CREATE, CR_FILE_UPDATE, CR_FILE_DELETE})
CHANGE_KINDS = ITEM_KINDS | PROJECT_KINDS | FILE_KINDS

# Data file history change types (FILE_<type> requests)
FILE_CHANGE_TYPES = {CR_FILE_CREATE: "CREATE", CR_FILE_UPDATE: "UPDATE", CR_FILE_DELETE: "DELETE"}

# Change request statuses
CR_PENDING = "PENDING"
CR_APPROVED = "APPROVED"
CR_REJECTED = "REJECTED"
CR_RESUBMITTED = "RESUBMITTED"
CR_CANCELLED = "CANCELLED"

CR_TRANSITIONS = {
    CR_PENDING: {CR_APPROVED, CR_REJECTED},
    CR_REJECTED: {CR_RESUBMITTED, CR_CANCELLED},
    CR_APPROVED: set(),
    CR_RESUBMITTED: set(),
    CR_CANCELLED: set(),
}

# Quality document approval statuses
QC_PENDING_QC = "PENDING_QC"
QC_PENDING_PM = "PENDING_PM"
QC_COMPLETED = "COMPLETED"
QC_REJECTED = "REJECTED"
QC_REVISION_REQUIRED = "REVISION_REQUIRED"
QC_PENDING_STAGES = (QC_PENDING_QC, QC_PENDING_PM)

QC_TRANSITIONS = {
    QC_PENDING_QC: {QC_PENDING_PM, QC_REJECTED, QC_REVISION_REQUIRED},
    QC_PENDING_PM: {QC_COMPLETED, QC_REJECTED, QC_REVISION_REQUIRED},
    QC_REVISION_REQUIRED: {QC_PENDING_QC},
    QC_COMPLETED: set(),
    QC_REJECTED: set(),
}

# State machines known to the authorization predicate
MACHINE_CHANGE_REQUEST = "change_request"
MACHINE_QC_APPROVAL = "qc_approval"

# Notification types
NOTIFY_REJECTION = "REJECTION"
NOTIFY_REVISION_REQUEST = "REVISION_REQUEST"
NOTIFY_APPROVAL = "APPROVAL"
NOTIFY_COMPLETED = "COMPLETED"
NOTIFICATION_TYPES = frozenset({NOTIFY_REJECTION, NOTIFY_REVISION_REQUEST, NOTIFY_APPROVAL, NOTIFY_COMPLETED})

DEFAULT_SIGNOFF_NOTE = "Approved"
