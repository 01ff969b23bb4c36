import os
from dataclasses import dataclass
from functools import lru_cache
from typing import Dict, Tuple

from .errors import ConfigurationError

# CHAIN_ENV -> (pocketd node, chain id)
CHAIN_ENDPOINTS: Dict[str, Tuple[str, str]] = {
    "MAIN": ("https://shannon-grove-rpc.mainnet.poktroll.com", "pocket"),
    "BETA": ("https://shannon-testnet-grove-rpc.beta.poktroll.com", "pocket-beta"),
}

STORE_BACKENDS = ("memory", "redis")


@dataclass(frozen=True)
class Settings:
    chain_env: str = "MAIN"
    payee_address: str = "pokt1lf0kekv9zcv9v3wy4v6jx2wh7v4665s8e0sl9s"
    min_payment_amount: int = 20_000_000
    payment_denom: str = "upokt"

    poll_interval_seconds: float = 5.0
    payment_timeout_seconds: float = 150.0

    secret_bytes: int = 16
    job_retention_seconds: float = 3600.0
    reaper_interval_seconds: float = 60.0
    max_active_jobs: int = 1000

    job_store_backend: str = "memory"
    redis_url: str = "redis://localhost:6379/0"

    pocketd_bin: str = "pocketd"
    bq_bin: str = "bq"
    bq_table: str = "portal-prd-gke-all.RELAYS.D2"
    command_timeout_seconds: float = 60.0

    log_level: str = "INFO"

    def __post_init__(self):
        if self.chain_env not in CHAIN_ENDPOINTS:
            raise ConfigurationError(
                f"CHAIN_ENV must be one of {sorted(CHAIN_ENDPOINTS)}, got {self.chain_env!r}"
            )
        if self.job_store_backend not in STORE_BACKENDS:
            raise ConfigurationError(
                f"JOB_STORE_BACKEND must be one of {STORE_BACKENDS}, got {self.job_store_backend!r}"
            )
        if self.poll_interval_seconds <= 0 or self.payment_timeout_seconds <= 0:
            raise ConfigurationError("poll interval and payment timeout must be positive")

    @property
    def pocketd_node(self) -> str:
        return CHAIN_ENDPOINTS[self.chain_env][0]

    @property
    def chain_id(self) -> str:
        return CHAIN_ENDPOINTS[self.chain_env][1]

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            chain_env=os.getenv("CHAIN_ENV", "MAIN").upper(),
            payee_address=os.getenv("PAYEE_ADDRESS", cls.payee_address),
            min_payment_amount=int(os.getenv("MIN_PAYMENT_AMOUNT", str(cls.min_payment_amount))),
            payment_denom=os.getenv("PAYMENT_DENOM", cls.payment_denom),
            poll_interval_seconds=float(os.getenv("POLL_INTERVAL_SECONDS", "5")),
            payment_timeout_seconds=float(os.getenv("PAYMENT_TIMEOUT_SECONDS", "150")),
            secret_bytes=int(os.getenv("SECRET_BYTES", "16")),
            job_retention_seconds=float(os.getenv("JOB_RETENTION_SECONDS", "3600")),
            reaper_interval_seconds=float(os.getenv("REAPER_INTERVAL_SECONDS", "60")),
            max_active_jobs=int(os.getenv("MAX_ACTIVE_JOBS", "1000")),
            job_store_backend=os.getenv("JOB_STORE_BACKEND", "memory").lower(),
            redis_url=os.getenv("REDIS_URL", cls.redis_url),
            pocketd_bin=os.getenv("POCKETD_BIN", cls.pocketd_bin),
            bq_bin=os.getenv("BQ_BIN", cls.bq_bin),
            bq_table=os.getenv("BQ_TABLE", cls.bq_table),
            command_timeout_seconds=float(os.getenv("COMMAND_TIMEOUT_SECONDS", "60")),
            log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
        )


@lru_cache
def get_settings() -> Settings:
    return Settings.from_env()
