"""
Core infrastructure modules for database, IPFS storage, and utilities.
"""
