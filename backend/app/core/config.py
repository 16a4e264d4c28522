from functools import lru_cache
from typing import Any
from urllib.parse import parse_qsl, urlencode, urlparse, urlunparse

from pydantic import AnyUrl, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


_ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"


def _ensure_sqlalchemy_postgres_scheme(value: str) -> str:
    if not value.lower().startswith("postgres"):
        return value

    parsed = urlparse(value)
    scheme = parsed.scheme.lower()

    if scheme == "postgres":
        scheme = "postgresql"

    if scheme == "postgresql":
        scheme = "postgresql+psycopg"

    if scheme not in {"postgresql+psycopg", "postgresql+asyncpg"}:
        scheme = "postgresql+psycopg"

    query_params = dict(parse_qsl(parsed.query, keep_blank_values=True))
    query_params.setdefault("sslmode", "require")
    new_query = urlencode(query_params, doseq=True)

    return urlunparse(parsed._replace(scheme=scheme, query=new_query))


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", extra="ignore"
    )

    debug: bool = Field(False, description="Enable FastAPI debug mode")
    environment: str = Field(
        default="development",
        description="Runtime environment (development|staging|production)",
    )
    database_url: AnyUrl | str = Field(
        default="sqlite:///../data/crossvenue.db",
        description="SQLAlchemy compatible database URL",
    )

    # Venues
    polymarket_base_url: AnyUrl = Field(
        default="https://gamma-api.polymarket.com",
        description="Base URL for the Polymarket Gamma API",
    )
    polymarket_markets_path: str = Field(
        default="/markets",
        description="Relative path for the Polymarket markets endpoint",
    )
    kalshi_base_url: AnyUrl = Field(
        default="https://api.elections.kalshi.com/trade-api/v2",
        description="Base URL for the Kalshi trade API",
    )
    venue_fetch_limit: int = Field(
        default=100,
        description="Maximum listings fetched per venue for a detection run",
        ge=1,
        le=1000,
    )
    venue_request_timeout_seconds: float = Field(
        default=10.0,
        description="HTTP timeout applied to venue adapter requests",
        gt=0,
    )

    # Matching and detection
    match_min_similarity: float = Field(
        default=0.4,
        description="Default similarity threshold for cross-venue pairs",
        ge=0.0,
        le=1.0,
    )
    match_config_ttl_seconds: float = Field(
        default=600.0,
        description="How long the dynamic keyword configuration is cached",
        gt=0,
    )
    scan_cache_ttl_seconds: float = Field(
        default=30.0,
        description="How long a matched-pair scan is memoized per parameter set",
        gt=0,
    )
    arbitrage_min_spread: float = Field(
        default=5.0,
        description="Default minimum profit percentage for reported opportunities",
        ge=0.0,
    )
    opportunity_ttl_minutes: int = Field(
        default=15,
        description="Minutes a detected opportunity stays active before expiring",
        ge=1,
    )
    opportunity_persist_limit: int = Field(
        default=20,
        description="Number of top opportunities persisted per scan",
        ge=1,
    )

    # Settlement chain
    chain_id: int = Field(
        default=545,
        description="EVM chain id of the settlement network (545 Flow testnet, 747 mainnet)",
    )
    rpc_url: str = Field(
        default="https://testnet.evm.nodes.onflow.org",
        description="Primary JSON-RPC endpoint for the settlement chain",
    )
    fallback_rpc_url: str = Field(
        default="https://flow-evm-testnet.gateway.tatum.io",
        description="Fallback JSON-RPC endpoint used when the primary times out",
    )
    rpc_timeout_seconds: float = Field(
        default=60.0,
        description="Request and receipt-wait timeout for RPC calls",
        gt=0,
    )
    mirror_contract_address: str = Field(
        default=_ZERO_ADDRESS,
        description="Address of the ExternalMarketMirror contract",
    )
    oracle_private_key: str | None = Field(
        default=None,
        description="Hex private key of the oracle signer (never logged)",
        repr=False,
    )
    settlement_batch_size: int = Field(
        default=20,
        description="Maximum scheduled resolutions processed per settlement run",
        ge=1,
    )
    settlement_stale_claim_seconds: float | None = Field(
        default=None,
        description="Seconds before an unfinished settlement claim may be taken over (default 3x RPC timeout)",
        gt=0,
    )

    @field_validator("database_url", mode="before")
    @classmethod
    def _normalize_postgres_urls(cls, value: Any) -> Any:
        if value is None or not isinstance(value, str):
            return value
        if value.startswith("postgres://"):
            return "postgresql://" + value[len("postgres://") :]
        return value

    @field_validator("mirror_contract_address")
    @classmethod
    def _validate_address(cls, value: str) -> str:
        candidate = value.strip()
        if not candidate.startswith("0x") or len(candidate) != 42:
            raise ValueError("MIRROR_CONTRACT_ADDRESS must be a 0x-prefixed 20-byte hex address")
        try:
            int(candidate[2:], 16)
        except ValueError as exc:
            raise ValueError("MIRROR_CONTRACT_ADDRESS must be hexadecimal") from exc
        return candidate

    @field_validator("oracle_private_key", mode="before")
    @classmethod
    def _normalize_private_key(cls, value: Any) -> Any:
        if value in (None, ""):
            return None
        if not isinstance(value, str):
            raise ValueError("ORACLE_PRIVATE_KEY must be a hex string")
        candidate = value.strip()
        if not candidate.startswith("0x"):
            candidate = "0x" + candidate
        if len(candidate) != 66:
            raise ValueError("ORACLE_PRIVATE_KEY must be 32 bytes of hex")
        return candidate

    @property
    def resolved_database_url(self) -> str:
        return _ensure_sqlalchemy_postgres_scheme(str(self.database_url))


@lru_cache
def get_settings() -> Settings:
    return Settings()


settings = get_settings()
