"""
Data File Register.

- Metadata for controlled data files, keyed by a unique data code
- Registered, edited and retired only through FILE_* change requests
- Every applied request appends a DataFileHistory row
"""
