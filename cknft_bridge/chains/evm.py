"""
EVM chain adapter for ERC-721 collections.
Reads ownership through the enumerable index when present and falls back
to Transfer logs, scanned in chunks because providers cap log ranges.
"""

from typing import Any, Iterable, Optional

from tenacity import retry, stop_after_attempt, wait_exponential, retry_if_exception_type
from web3 import AsyncWeb3, Web3
from web3.exceptions import ContractLogicError

from cknft_bridge.chains.base import ChainQueryAdapter, is_rate_limited
from cknft_bridge.config import settings
from cknft_bridge.errors import AdapterError, EnumerationUnsupportedError, RateLimitError
from cknft_bridge.models import ChainRef, TransferEvent
from cknft_bridge.utils.logging import get_logger

logger = get_logger(__name__)


# ERC721Enumerable interface id
ERC721_ENUMERABLE_INTERFACE = bytes.fromhex("780e9d63")

# Gas used by the remote collection contract
DEPLOYMENT_GAS = 1_500_000
MINT_GAS_PER_ASSET = 120_000
NATIVE_TRANSFER_GAS = 21_000
FALLBACK_GAS_PRICE_WEI = 20_000_000_000  # 20 gwei

# Minimal ERC721 ABI
ERC721_ABI = [
    {
        "constant": True,
        "inputs": [{"name": "owner", "type": "address"}],
        "name": "balanceOf",
        "outputs": [{"name": "", "type": "uint256"}],
        "type": "function"
    },
    {
        "constant": True,
        "inputs": [{"name": "tokenId", "type": "uint256"}],
        "name": "ownerOf",
        "outputs": [{"name": "", "type": "address"}],
        "type": "function"
    },
    {
        "constant": True,
        "inputs": [
            {"name": "owner", "type": "address"},
            {"name": "index", "type": "uint256"}
        ],
        "name": "tokenOfOwnerByIndex",
        "outputs": [{"name": "", "type": "uint256"}],
        "type": "function"
    },
    {
        "constant": True,
        "inputs": [{"name": "interfaceId", "type": "bytes4"}],
        "name": "supportsInterface",
        "outputs": [{"name": "", "type": "bool"}],
        "type": "function"
    },
    {
        "constant": False,
        "inputs": [
            {"name": "from", "type": "address"},
            {"name": "to", "type": "address"},
            {"name": "tokenId", "type": "uint256"}
        ],
        "name": "safeTransferFrom",
        "outputs": [],
        "type": "function"
    },
    {
        "anonymous": False,
        "inputs": [
            {"indexed": True, "name": "from", "type": "address"},
            {"indexed": True, "name": "to", "type": "address"},
            {"indexed": True, "name": "tokenId", "type": "uint256"}
        ],
        "name": "Transfer",
        "type": "event"
    }
]


class EVMChainAdapter(ChainQueryAdapter):
    """ERC-721 ownership queries over an async JSON-RPC provider."""

    native_symbol = "ETH"
    native_decimals = 18

    def __init__(
        self,
        chain_id: int,
        rpc_url: Optional[str] = None,
        log_chunk_blocks: Optional[int] = None,
    ):
        self.chain = ChainRef.evm(chain_id)
        self._rpc_url = rpc_url or settings.get_chain_rpc("evm", str(chain_id))
        self._log_chunk_blocks = log_chunk_blocks or settings.evm_log_chunk_blocks
        self._web3: Optional[AsyncWeb3] = None
        self._contracts: dict[str, Any] = {}

    async def initialize(self) -> None:
        """Initialize the async Web3 client."""
        if not self._rpc_url:
            raise AdapterError("No RPC endpoint configured", self.chain.key)

        self._web3 = AsyncWeb3(
            AsyncWeb3.AsyncHTTPProvider(
                self._rpc_url,
                request_kwargs={"timeout": settings.rpc_timeout_seconds},
            )
        )
        logger.info("EVM adapter initialized", chain=self.chain.key)

    async def close(self) -> None:
        """Close the provider session."""
        if self._web3 is not None:
            provider = self._web3.provider
            disconnect = getattr(provider, "disconnect", None)
            if disconnect is not None:
                await disconnect()
        self._web3 = None
        self._contracts.clear()

    @property
    def web3(self) -> AsyncWeb3:
        if self._web3 is None:
            raise RuntimeError("Client not initialized")
        return self._web3

    def _contract(self, address: str):
        key = address.lower()
        if key not in self._contracts:
            self._contracts[key] = self.web3.eth.contract(
                address=Web3.to_checksum_address(address),
                abi=ERC721_ABI,
            )
        return self._contracts[key]

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=2, max=10),
        retry=retry_if_exception_type(RateLimitError),
        reraise=True,
    )
    async def _rpc(self, awaitable_factory):
        """Run one RPC call, mapping provider failures onto the adapter taxonomy."""
        try:
            return await awaitable_factory()
        except ContractLogicError:
            raise
        except Exception as e:
            if is_rate_limited(e):
                logger.warning("Rate limited by RPC provider, retrying...", chain=self.chain.key)
                raise RateLimitError("Rate limit exceeded", self.chain.key)
            raise AdapterError(f"RPC call failed: {e}", self.chain.key)

    # ===================
    # Ownership
    # ===================

    async def get_latest_height(self) -> int:
        return await self._rpc(lambda: self.web3.eth.block_number)

    async def _supports_enumeration(self, contract) -> Optional[bool]:
        try:
            return await self._rpc(
                lambda: contract.functions.supportsInterface(ERC721_ENUMERABLE_INTERFACE).call()
            )
        except (ContractLogicError, AdapterError):
            # No ERC-165; try the index directly
            return None

    async def list_owned(self, owner: str, contract: str) -> list[str]:
        c = self._contract(contract)
        holder = Web3.to_checksum_address(owner)

        if await self._supports_enumeration(c) is False:
            raise EnumerationUnsupportedError("Contract is not ERC721Enumerable", self.chain.key)

        balance = await self._rpc(lambda: c.functions.balanceOf(holder).call())
        token_ids: list[str] = []
        for index in range(int(balance)):
            try:
                token_id = await self._rpc(
                    lambda i=index: c.functions.tokenOfOwnerByIndex(holder, i).call()
                )
            except ContractLogicError:
                # A partial index is worse than none; let the caller fall back to logs
                raise EnumerationUnsupportedError(
                    "tokenOfOwnerByIndex reverted", self.chain.key
                )
            token_ids.append(str(token_id))
        return token_ids

    async def get_transfers(
        self,
        contract: str,
        from_height: int,
        to_height: int,
        sender: Optional[str] = None,
        recipient: Optional[str] = None,
        token_ids: Optional[Iterable[str]] = None,
    ) -> list[TransferEvent]:
        c = self._contract(contract)
        argument_filters: dict[str, Any] = {}
        if sender:
            argument_filters["from"] = Web3.to_checksum_address(sender)
        if recipient:
            argument_filters["to"] = Web3.to_checksum_address(recipient)
        wanted = {str(t) for t in token_ids} if token_ids is not None else None

        events: list[TransferEvent] = []
        start = max(0, from_height)
        while start <= to_height:
            end = min(to_height, start + self._log_chunk_blocks - 1)
            logs = await self._rpc(
                lambda s=start, e=end: c.events.Transfer.get_logs(
                    argument_filters=argument_filters,
                    from_block=s,
                    to_block=e,
                )
            )
            for log in logs:
                token_id = str(log["args"]["tokenId"])
                if wanted is not None and token_id not in wanted:
                    continue
                tx_hash = log.get("transactionHash")
                events.append(TransferEvent(
                    contract=contract,
                    token_id=token_id,
                    sender=log["args"]["from"],
                    recipient=log["args"]["to"],
                    height=int(log["blockNumber"]),
                    tx_hash=tx_hash.hex() if tx_hash is not None else None,
                ))
            start = end + 1

        logger.debug(
            "Scanned transfer logs",
            chain=self.chain.key,
            contract=contract,
            from_block=from_height,
            to_block=to_height,
            found=len(events),
        )
        return events

    async def owner_of(self, contract: str, token_id: str) -> Optional[str]:
        c = self._contract(contract)
        try:
            return await self._rpc(lambda: c.functions.ownerOf(int(token_id)).call())
        except ContractLogicError:
            # "owner query for nonexistent token"
            return None

    # ===================
    # Funding
    # ===================

    async def get_native_balance(self, address: str) -> int:
        return int(await self._rpc(
            lambda: self.web3.eth.get_balance(Web3.to_checksum_address(address))
        ))

    async def estimate_native_funding(self, asset_count: int, deploy_collection: bool) -> int:
        try:
            gas_price = int(await self._rpc(lambda: self.web3.eth.gas_price))
        except AdapterError as e:
            logger.warning("Gas price unavailable, using fallback", chain=self.chain.key, error=str(e))
            gas_price = FALLBACK_GAS_PRICE_WEI

        gas = MINT_GAS_PER_ASSET * asset_count
        if deploy_collection:
            gas += DEPLOYMENT_GAS
        return gas * gas_price

    # ===================
    # Transactions
    # ===================

    async def build_lock_transaction(
        self,
        contract: str,
        token_id: str,
        owner: str,
        destination: str,
    ) -> dict:
        c = self._contract(contract)
        sender = Web3.to_checksum_address(owner)
        nonce = await self._rpc(lambda: self.web3.eth.get_transaction_count(sender, "pending"))
        return await self._rpc(
            lambda: c.functions.safeTransferFrom(
                sender,
                Web3.to_checksum_address(destination),
                int(token_id),
            ).build_transaction({
                "from": sender,
                "nonce": nonce,
                "chainId": int(self.chain.network),
            })
        )

    async def build_native_transfer(self, sender: str, recipient: str, amount: int) -> dict:
        sender = Web3.to_checksum_address(sender)
        nonce = await self._rpc(lambda: self.web3.eth.get_transaction_count(sender, "pending"))
        gas_price = await self._rpc(lambda: self.web3.eth.gas_price)
        return {
            "from": sender,
            "to": Web3.to_checksum_address(recipient),
            "value": amount,
            "nonce": nonce,
            "gas": NATIVE_TRANSFER_GAS,
            "gasPrice": int(gas_price),
            "chainId": int(self.chain.network),
        }

    async def deployment_gas_params(self) -> tuple[int, int, int]:
        try:
            gas_price = int(await self._rpc(lambda: self.web3.eth.gas_price))
            priority_fee = int(await self._rpc(lambda: self.web3.eth.max_priority_fee))
        except AdapterError as e:
            logger.warning("Fee market unavailable, using fallback", chain=self.chain.key, error=str(e))
            return FALLBACK_GAS_PRICE_WEI, DEPLOYMENT_GAS, 0
        return gas_price, DEPLOYMENT_GAS, priority_fee
