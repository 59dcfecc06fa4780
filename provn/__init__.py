"""
Provn - short-video platform backend with IP-NFT provenance

Uploads are transcoded, fingerprinted for duplicates, pinned to IPFS and
minted on-chain; the rest of the API serves profiles, social features,
licensing and analytics to the web client.
"""

__version__ = "1.0.0"
__author__ = "Provn Team"
__description__ = "Short-video IP-NFT platform API"
