"""
Item & Version Store.

- Projects own a tree of items addressed by dash-delimited codes ("WQ-9-2")
- Items hold current state only; every applied change appends an ItemHistory row
- History rows are the audit ledger: never updated, never deleted
"""
