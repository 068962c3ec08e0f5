"""
Cove Data Protection backup connector.

CoveBackupConnector (cove.connector) is the entry point; everything else in
this package is its protocol client, cache and data mapping machinery.
"""
