"""
Solana adapter for Metaplex NFT collections.

Solana has no collection-wide ownership index: owned NFTs come from the
wallet's token accounts (amount 1, decimals 0) filtered by the verified
collection in each mint's metadata account. Token ids exposed to the rest
of the engine are the mint's 32-byte key read as a big-endian integer, the
same Nat the orchestrator uses for the mirrored asset.
"""

import struct
from dataclasses import dataclass
from typing import Any, Iterable, Optional

from solana.rpc.async_api import AsyncClient as SolanaClient
from solana.rpc.commitment import Confirmed
from solana.rpc.types import TokenAccountOpts
from solders.message import Message
from solders.pubkey import Pubkey
from solders.signature import Signature
from solders.system_program import TransferParams, transfer
from solders.transaction import Transaction
from spl.token.constants import TOKEN_PROGRAM_ID
from spl.token.instructions import (
    TransferCheckedParams,
    create_associated_token_account,
    get_associated_token_address,
    transfer_checked,
)
from tenacity import retry, stop_after_attempt, wait_exponential, retry_if_exception_type

from cknft_bridge.chains.base import ChainQueryAdapter, is_rate_limited
from cknft_bridge.config import settings
from cknft_bridge.errors import AdapterError, RateLimitError
from cknft_bridge.models import ChainRef, TransferEvent
from cknft_bridge.utils.logging import get_logger

logger = get_logger(__name__)


TOKEN_METADATA_PROGRAM_ID = Pubkey.from_string("metaqbxxUerdq28cj1RbAWkYQm3ybzjb6a8bt518x1s")

# Account sizes created per mirrored NFT (and once for the collection)
MINT_ACCOUNT_SIZE = 82
TOKEN_ACCOUNT_SIZE = 165
METADATA_ACCOUNT_SIZE = 800
MASTER_EDITION_ACCOUNT_SIZE = 282

SIGNATURES_PER_DEPLOYMENT = 6
SIGNATURES_PER_ASSET = 6
DEFAULT_LAMPORTS_PER_SIGNATURE = 5_000


# ===================
# Mint <-> token id
# ===================

def mint_to_token_id(mint: str) -> str:
    """Nat token id for a mint address."""
    return str(int.from_bytes(bytes(Pubkey.from_string(mint)), "big"))


def token_id_to_mint(token_id: str) -> str:
    """Mint address for a Nat token id."""
    value = int(token_id)
    if value < 0 or value >= 1 << 256:
        raise ValueError(f"Token id out of range for a Solana mint: {token_id}")
    return str(Pubkey(value.to_bytes(32, "big")))


def metadata_address(mint: Pubkey) -> Pubkey:
    address, _ = Pubkey.find_program_address(
        [b"metadata", bytes(TOKEN_METADATA_PROGRAM_ID), bytes(mint)],
        TOKEN_METADATA_PROGRAM_ID,
    )
    return address


# ===================
# Metadata parsing
# ===================

@dataclass
class MetadataAccount:
    """The fields of a Metaplex metadata account the bridge cares about."""
    update_authority: str
    mint: str
    name: str
    symbol: str
    uri: str
    collection: Optional[str] = None
    collection_verified: bool = False


class _Reader:
    def __init__(self, data: bytes):
        self.data = data
        self.offset = 0

    def take(self, size: int) -> bytes:
        end = self.offset + size
        if end > len(self.data):
            raise ValueError("Metadata account truncated")
        chunk = self.data[self.offset:end]
        self.offset = end
        return chunk

    def u8(self) -> int:
        return self.take(1)[0]

    def u32(self) -> int:
        return struct.unpack("<I", self.take(4))[0]

    def pubkey(self) -> str:
        return str(Pubkey(self.take(32)))

    def string(self) -> str:
        return self.take(self.u32()).decode("utf-8", errors="replace").rstrip("\x00")


def parse_metadata(data: bytes) -> MetadataAccount:
    """
    Decode a Metaplex metadata account.

    Layout: key, update authority, mint, name/symbol/uri (u32 length
    prefixed, NUL padded), seller fee, optional creators, primary sale,
    mutability, optional edition nonce, optional token standard, optional
    collection (verified flag + key).

    Raises:
        ValueError: data is truncated
    """
    r = _Reader(data)
    r.u8()  # key
    update_authority = r.pubkey()
    mint = r.pubkey()
    name = r.string()
    symbol = r.string()
    uri = r.string()
    r.take(2)  # seller fee basis points

    if r.u8():
        creator_count = r.u32()
        r.take(creator_count * 34)

    r.u8()  # primary sale happened
    r.u8()  # is mutable

    collection = None
    verified = False
    # Older accounts end before the optional trailer
    try:
        if r.u8():
            r.u8()  # edition nonce
        if r.u8():
            r.u8()  # token standard
        if r.u8():
            verified = bool(r.u8())
            collection = r.pubkey()
    except ValueError:
        pass

    return MetadataAccount(
        update_authority=update_authority,
        mint=mint,
        name=name,
        symbol=symbol,
        uri=uri,
        collection=collection,
        collection_verified=verified,
    )


def _token_movements(meta: Any) -> list[tuple[str, str, str]]:
    """(mint, sender, recipient) for every whole NFT that changed hands in a transaction."""
    pre: dict[tuple[str, str], int] = {}
    post: dict[tuple[str, str], int] = {}
    for balances, target in ((meta.pre_token_balances or [], pre), (meta.post_token_balances or [], post)):
        for balance in balances:
            if balance.owner is None or balance.ui_token_amount.decimals != 0:
                continue
            target[(str(balance.mint), str(balance.owner))] = int(balance.ui_token_amount.amount)

    movements = []
    mints = {mint for mint, _ in pre} | {mint for mint, _ in post}
    for mint in mints:
        sender = next(
            (owner for (m, owner), amount in pre.items()
             if m == mint and amount == 1 and post.get((m, owner), 0) == 0),
            None,
        )
        recipient = next(
            (owner for (m, owner), amount in post.items()
             if m == mint and amount == 1 and pre.get((m, owner), 0) == 0),
            None,
        )
        if sender and recipient:
            movements.append((mint, sender, recipient))
    return movements


class SolanaChainAdapter(ChainQueryAdapter):
    """Metaplex NFT ownership queries over the Solana JSON-RPC API."""

    native_symbol = "SOL"
    native_decimals = 9

    def __init__(
        self,
        cluster: str = "mainnet",
        rpc_url: Optional[str] = None,
        signature_limit: Optional[int] = None,
    ):
        self.chain = ChainRef.solana(cluster)
        self._rpc_url = rpc_url or settings.get_chain_rpc("solana", cluster)
        self._signature_limit = signature_limit or settings.solana_signature_scan_limit
        self._client: Optional[SolanaClient] = None
        # mint -> parsed metadata; immutable for the fields we read
        self._metadata: dict[str, Optional[MetadataAccount]] = {}

    async def initialize(self) -> None:
        """Initialize the Solana RPC client."""
        if not self._rpc_url:
            raise AdapterError("No RPC endpoint configured", self.chain.key)
        self._client = SolanaClient(self._rpc_url, timeout=settings.rpc_timeout_seconds)
        logger.info("Solana adapter initialized", chain=self.chain.key)

    async def close(self) -> None:
        """Close the RPC client."""
        if self._client:
            await self._client.close()
        self._client = None

    @property
    def client(self) -> SolanaClient:
        if self._client is None:
            raise RuntimeError("Client not initialized")
        return self._client

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=2, max=10),
        retry=retry_if_exception_type(RateLimitError),
        reraise=True,
    )
    async def _rpc(self, awaitable_factory):
        try:
            return await awaitable_factory()
        except Exception as e:
            if is_rate_limited(e):
                logger.warning("Rate limited by RPC provider, retrying...", chain=self.chain.key)
                raise RateLimitError("Rate limit exceeded", self.chain.key)
            raise AdapterError(f"RPC call failed: {e}", self.chain.key)

    # ===================
    # Metadata
    # ===================

    async def get_metadata(self, mint: str) -> Optional[MetadataAccount]:
        """Metadata for a mint, or None when it has no metadata account."""
        if mint in self._metadata:
            return self._metadata[mint]

        address = metadata_address(Pubkey.from_string(mint))
        response = await self._rpc(lambda: self.client.get_account_info(address))
        metadata = None
        if response.value is not None:
            try:
                metadata = parse_metadata(bytes(response.value.data))
            except ValueError as e:
                logger.warning("Unparseable metadata account", mint=mint, error=str(e))
        self._metadata[mint] = metadata
        return metadata

    async def in_collection(self, mint: str, collection: str) -> bool:
        metadata = await self.get_metadata(mint)
        return metadata is not None and metadata.collection == collection

    # ===================
    # Ownership
    # ===================

    async def get_latest_height(self) -> int:
        response = await self._rpc(lambda: self.client.get_slot())
        return int(response.value)

    async def list_owned(self, owner: str, contract: str) -> list[str]:
        response = await self._rpc(
            lambda: self.client.get_token_accounts_by_owner_json_parsed(
                Pubkey.from_string(owner),
                TokenAccountOpts(program_id=TOKEN_PROGRAM_ID),
            )
        )

        token_ids = []
        for account in response.value or []:
            parsed = account.account.data.parsed
            if not parsed or "info" not in parsed:
                continue
            info = parsed["info"]
            amount = info.get("tokenAmount", {})
            if amount.get("amount") != "1" or amount.get("decimals") != 0:
                continue
            mint = info.get("mint")
            if mint and await self.in_collection(mint, contract):
                token_ids.append(mint_to_token_id(mint))

        logger.debug("Listed owned NFTs", chain=self.chain.key, owner=owner[:8] + "...", count=len(token_ids))
        return token_ids

    async def _signatures(self, address: Pubkey, from_height: int, to_height: int) -> list[Signature]:
        response = await self._rpc(
            lambda: self.client.get_signatures_for_address(address, limit=self._signature_limit)
        )
        return [
            entry.signature
            for entry in response.value or []
            if entry.err is None and from_height <= entry.slot <= to_height
        ]

    async def _events_for(self, signature: Signature) -> list[TransferEvent]:
        response = await self._rpc(
            lambda: self.client.get_transaction(
                signature,
                encoding="jsonParsed",
                commitment=Confirmed,
                max_supported_transaction_version=0,
            )
        )
        tx = response.value
        if tx is None or tx.transaction.meta is None:
            return []
        return [
            TransferEvent(
                contract=mint,
                token_id=mint_to_token_id(mint),
                sender=sender,
                recipient=recipient,
                height=int(tx.slot),
                tx_hash=str(signature),
            )
            for mint, sender, recipient in _token_movements(tx.transaction.meta)
        ]

    async def get_transfers(
        self,
        contract: str,
        from_height: int,
        to_height: int,
        sender: Optional[str] = None,
        recipient: Optional[str] = None,
        token_ids: Optional[Iterable[str]] = None,
    ) -> list[TransferEvent]:
        """
        Transfer history from parsed transactions.

        With ``token_ids`` each mint's own signature list is scanned; otherwise
        the sender's (or recipient's) wallet history is scanned and filtered to
        the collection. Without either there is nothing to anchor the scan on.
        """
        if token_ids is not None:
            anchors = [Pubkey.from_string(token_id_to_mint(t)) for t in token_ids]
        elif sender or recipient:
            anchors = [Pubkey.from_string(sender or recipient)]
        else:
            return []

        seen: set[str] = set()
        events: dict[tuple[str, str], TransferEvent] = {}
        for anchor in anchors:
            for signature in await self._signatures(anchor, from_height, to_height):
                if str(signature) in seen:
                    continue
                seen.add(str(signature))
                for event in await self._events_for(signature):
                    events[(event.tx_hash, event.token_id)] = event

        wanted = {str(t) for t in token_ids} if token_ids is not None else None
        results = []
        for event in events.values():
            if wanted is not None and event.token_id not in wanted:
                continue
            if sender and event.sender != sender:
                continue
            if recipient and event.recipient != recipient:
                continue
            if not await self.in_collection(event.contract, contract):
                continue
            # Report the collection as the contract, like the EVM side
            results.append(TransferEvent(
                contract=contract,
                token_id=event.token_id,
                sender=event.sender,
                recipient=event.recipient,
                height=event.height,
                tx_hash=event.tx_hash,
            ))

        results.sort(key=lambda e: e.height)
        return results

    async def owner_of(self, contract: str, token_id: str) -> Optional[str]:
        mint = Pubkey.from_string(token_id_to_mint(token_id))
        response = await self._rpc(lambda: self.client.get_token_largest_accounts(mint))
        holding = next(
            (a for a in response.value or [] if a.amount.amount == "1"),
            None,
        )
        if holding is None:
            # Burned or never minted
            return None

        account = await self._rpc(lambda: self.client.get_account_info_json_parsed(holding.address))
        if account.value is None:
            return None
        parsed = account.value.data.parsed
        return parsed.get("info", {}).get("owner")

    # ===================
    # Funding
    # ===================

    async def get_native_balance(self, address: str) -> int:
        response = await self._rpc(lambda: self.client.get_balance(Pubkey.from_string(address)))
        return int(response.value)

    async def _rent(self, size: int) -> int:
        response = await self._rpc(lambda: self.client.get_minimum_balance_for_rent_exemption(size))
        return int(response.value)

    async def _lamports_per_signature(self) -> int:
        payer = Pubkey.default()
        blockhash = await self._rpc(lambda: self.client.get_latest_blockhash())
        message = Message.new_with_blockhash(
            [transfer(TransferParams(from_pubkey=payer, to_pubkey=payer, lamports=0))],
            payer,
            blockhash.value.blockhash,
        )
        response = await self._rpc(lambda: self.client.get_fee_for_message(message))
        return int(response.value) if response.value is not None else DEFAULT_LAMPORTS_PER_SIGNATURE

    async def estimate_native_funding(self, asset_count: int, deploy_collection: bool) -> int:
        account_set = 0
        for size in (MINT_ACCOUNT_SIZE, TOKEN_ACCOUNT_SIZE, METADATA_ACCOUNT_SIZE, MASTER_EDITION_ACCOUNT_SIZE):
            account_set += await self._rent(size)
        recipient_ata = await self._rent(TOKEN_ACCOUNT_SIZE)
        per_signature = await self._lamports_per_signature()

        signatures = SIGNATURES_PER_ASSET * asset_count
        total = (account_set + recipient_ata) * asset_count
        if deploy_collection:
            signatures += SIGNATURES_PER_DEPLOYMENT
            total += account_set
        return total + signatures * per_signature

    # ===================
    # Transactions
    # ===================

    async def build_lock_transaction(
        self,
        contract: str,
        token_id: str,
        owner: str,
        destination: str,
    ) -> Transaction:
        mint = Pubkey.from_string(token_id_to_mint(token_id))
        owner_key = Pubkey.from_string(owner)
        destination_key = Pubkey.from_string(destination)

        source_ata = get_associated_token_address(owner_key, mint)
        dest_ata = get_associated_token_address(destination_key, mint)

        instructions = []
        existing = await self._rpc(lambda: self.client.get_account_info(dest_ata))
        if not existing.value:
            instructions.append(create_associated_token_account(
                payer=owner_key,
                owner=destination_key,
                mint=mint,
            ))
        instructions.append(transfer_checked(
            TransferCheckedParams(
                program_id=TOKEN_PROGRAM_ID,
                source=source_ata,
                mint=mint,
                dest=dest_ata,
                owner=owner_key,
                amount=1,
                decimals=0,
            )
        ))

        blockhash = await self._rpc(lambda: self.client.get_latest_blockhash())
        message = Message.new_with_blockhash(instructions, owner_key, blockhash.value.blockhash)
        return Transaction.new_unsigned(message)


    async def build_native_transfer(self, sender: str, recipient: str, amount: int) -> Transaction:
        sender_key = Pubkey.from_string(sender)
        instruction = transfer(TransferParams(
            from_pubkey=sender_key,
            to_pubkey=Pubkey.from_string(recipient),
            lamports=amount,
        ))
        blockhash = await self._rpc(lambda: self.client.get_latest_blockhash())
        message = Message.new_with_blockhash([instruction], sender_key, blockhash.value.blockhash)
        return Transaction.new_unsigned(message)
