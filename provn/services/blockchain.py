"""
IP-NFT minting and wallet signature verification.
"""

import hashlib
import structlog
from typing import Any, Dict, Optional

from eth_account import Account
from eth_account.messages import encode_defunct
from pydantic import BaseModel
from web3 import Web3

from provn import config

logger = structlog.get_logger()

ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"

IPNFT_ABI = [
    {
        "type": "function",
        "name": "mintIPNFT",
        "stateMutability": "nonpayable",
        "inputs": [
            {"name": "to", "type": "address"},
            {"name": "tokenURI", "type": "string"},
            {"name": "royaltyBps", "type": "uint96"},
            {"name": "parentTokenId", "type": "uint256"},
        ],
        "outputs": [{"name": "tokenId", "type": "uint256"}],
    },
    {
        "type": "event",
        "name": "Transfer",
        "anonymous": False,
        "inputs": [
            {"indexed": True, "name": "from", "type": "address"},
            {"indexed": True, "name": "to", "type": "address"},
            {"indexed": True, "name": "tokenId", "type": "uint256"},
        ],
    },
]


class MintError(Exception):
    """Raised when an IP-NFT could not be minted."""
    pass


class MintResult(BaseModel):
    token_id: str
    transaction_hash: str
    block_number: Optional[int] = None
    gas_used: int = 0
    contract_address: str
    dry_run: bool = False


def get_explorer_url(transaction_hash: str) -> str:
    return f"{config.EXPLORER_URL}/tx/{transaction_hash}"


def get_token_url(token_id: str) -> str:
    contract = config.IPNFT_CONTRACT_ADDRESS or ZERO_ADDRESS
    return f"{config.EXPLORER_URL}/token/{contract}/instance/{token_id}"


def verify_signed_message(message: str, signature: str, address: str) -> bool:
    """Check that an EIP-191 personal-sign signature recovers to ``address``."""
    try:
        recovered = Account.recover_message(encode_defunct(text=message), signature=signature)
    except Exception as e:
        logger.warning("Signature recovery failed", address=address, error=str(e))
        return False

    valid = recovered.lower() == address.lower()
    if not valid:
        logger.warning("Signature does not match address", address=address, recovered=recovered)
    return valid


class BlockchainService:
    """Mints IP-NFTs through the configured contract, or in dry-run mode without one."""

    def __init__(self):
        self.w3 = None
        self.contract = None
        self.account = None

        if config.CHAIN_RPC_URL and config.IPNFT_CONTRACT_ADDRESS and config.MINTER_PRIVATE_KEY:
            try:
                self.w3 = Web3(Web3.HTTPProvider(config.CHAIN_RPC_URL, request_kwargs={"timeout": 30}))
                self.contract = self.w3.eth.contract(
                    address=Web3.to_checksum_address(config.IPNFT_CONTRACT_ADDRESS),
                    abi=IPNFT_ABI,
                )
                self.account = Account.from_key(config.MINTER_PRIVATE_KEY)
                logger.info("Blockchain service initialized",
                           rpc_url=config.CHAIN_RPC_URL, chain_id=config.CHAIN_ID,
                           contract=config.IPNFT_CONTRACT_ADDRESS, minter=self.account.address)
            except Exception as e:
                logger.error("Failed to initialize blockchain service", error=str(e))
                self.w3 = self.contract = self.account = None

        if self.contract is None:
            logger.warning("Chain not configured - minting runs in dry-run mode")

    @property
    def dry_run(self) -> bool:
        return self.contract is None

    def mint_ipnft(
        self,
        metadata_uri: str,
        creator: str,
        royalty_bps: int,
        parent_token_id: Optional[str] = None,
    ) -> MintResult:
        """
        Mint an IP-NFT for ``creator`` pointing at ``metadata_uri``.

        Args:
            metadata_uri: ``ipfs://`` URI of the token metadata
            creator: Wallet receiving the token
            royalty_bps: Royalty in basis points
            parent_token_id: Token this one derives from, if any

        Returns:
            MintResult with the token id read from the Transfer event
        """
        if self.dry_run:
            return self._dry_run_mint(metadata_uri, creator, parent_token_id)

        try:
            tx = self.contract.functions.mintIPNFT(
                Web3.to_checksum_address(creator),
                metadata_uri,
                int(royalty_bps),
                int(parent_token_id or 0),
            ).build_transaction({
                "from": self.account.address,
                "chainId": config.CHAIN_ID,
                "nonce": self.w3.eth.get_transaction_count(self.account.address, "pending"),
                "gas": config.MINT_GAS_LIMIT,
            })

            signed = self.account.sign_transaction(tx)
            raw_tx = getattr(signed, "raw_transaction", None) or signed.rawTransaction
            tx_hash = self.w3.eth.send_raw_transaction(raw_tx)
            receipt = self.w3.eth.wait_for_transaction_receipt(tx_hash, timeout=config.MINT_RECEIPT_TIMEOUT)

        except Exception as e:
            logger.error("Mint transaction failed", creator=creator, metadata_uri=metadata_uri, error=str(e))
            raise MintError(f"Mint transaction failed: {e}") from e

        if receipt.get("status") != 1:
            raise MintError(f"Mint transaction reverted: {tx_hash.hex()}")

        transfers = self.contract.events.Transfer().process_receipt(receipt)
        if not transfers:
            raise MintError("Mint receipt contains no Transfer event")

        result = MintResult(
            token_id=str(transfers[0]["args"]["tokenId"]),
            transaction_hash=Web3.to_hex(receipt["transactionHash"]),
            block_number=receipt["blockNumber"],
            gas_used=receipt["gasUsed"],
            contract_address=self.contract.address,
        )
        logger.info("IP-NFT minted", token_id=result.token_id,
                   transaction_hash=result.transaction_hash, block_number=result.block_number)
        return result

    def _dry_run_mint(self, metadata_uri: str, creator: str, parent_token_id: Optional[str]) -> MintResult:
        """Deterministic stand-in values derived from the metadata URI."""
        seed = f"{metadata_uri}:{creator.lower()}:{parent_token_id or ''}".encode("utf-8")
        digest = hashlib.sha256(seed).hexdigest()
        result = MintResult(
            token_id=str(int(digest[:12], 16)),
            transaction_hash=f"0x{digest}",
            block_number=int(digest[12:18], 16),
            gas_used=0,
            contract_address=config.IPNFT_CONTRACT_ADDRESS or ZERO_ADDRESS,
            dry_run=True,
        )
        logger.info("Dry-run mint", token_id=result.token_id, metadata_uri=metadata_uri)
        return result

    def health_check(self) -> Dict[str, Any]:
        if self.dry_run:
            return {"status": "degraded", "mode": "dry_run", "chain_id": config.CHAIN_ID}
        try:
            block_number = self.w3.eth.block_number
            return {
                "status": "healthy",
                "mode": "live",
                "chain_id": config.CHAIN_ID,
                "block_number": block_number,
                "minter": self.account.address,
            }
        except Exception as e:
            logger.warning("Chain health check failed", error=str(e))
            return {"status": "unhealthy", "mode": "live", "chain_id": config.CHAIN_ID, "error": str(e)}
