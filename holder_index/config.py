import os
from dataclasses import dataclass

from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()


def _env_int(key, default):
    return int(os.getenv(key, str(default)))


def _env_float(key, default):
    return float(os.getenv(key, str(default)))


def _env_bool(key, default):
    value = os.getenv(key)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


@dataclass
class Settings:
    rpc_url: str = "https://cloudflare-eth.com"
    rpc_timeout: float = 30.0
    alchemy_api_key: str = ""
    alchemy_network: str = "eth-mainnet"

    cache_backend: str = "file"
    cache_dir: str = "cache"
    supabase_url: str = ""
    supabase_key: str = ""
    supabase_cache_table: str = "holder_cache"
    lock_backend: str = "memory"
    lock_ttl: int = 3600

    window_size: int = 500
    max_blocks_per_sync: int = 50_000
    sync_concurrency: int = 5
    fast_forward: bool = True
    probe_span: int = 50_000
    range_cache_ttl: int = 86400
    burn_validation_ttl: int = 3600

    batch_size: int = 50
    call_concurrency: int = 3

    max_retries: int = 3
    retry_base_delay: float = 0.5
    rate_limit_multiplier: float = 4.0
    retry_max_delay: float = 10.0

    collections_file: str = ""
    log_level: str = "INFO"
    port: int = 5000
    cors_origins: str = "*"
    warm_up_on_start: bool = False

    @classmethod
    def from_env(cls):
        return cls(
            rpc_url=os.getenv("RPC_URL", cls.rpc_url),
            rpc_timeout=_env_float("RPC_TIMEOUT", cls.rpc_timeout),
            alchemy_api_key=os.getenv("ALCHEMY_API_KEY", ""),
            alchemy_network=os.getenv("ALCHEMY_NETWORK", cls.alchemy_network),
            cache_backend=os.getenv("CACHE_BACKEND", cls.cache_backend).lower(),
            cache_dir=os.getenv("CACHE_DIR", cls.cache_dir),
            supabase_url=os.getenv("SUPABASE_URL", ""),
            supabase_key=os.getenv("SUPABASE_KEY", ""),
            supabase_cache_table=os.getenv("SUPABASE_CACHE_TABLE", cls.supabase_cache_table),
            lock_backend=os.getenv("LOCK_BACKEND", cls.lock_backend).lower(),
            lock_ttl=_env_int("LOCK_TTL", cls.lock_ttl),
            window_size=_env_int("WINDOW_SIZE", cls.window_size),
            max_blocks_per_sync=_env_int("MAX_BLOCKS_PER_SYNC", cls.max_blocks_per_sync),
            sync_concurrency=_env_int("SYNC_CONCURRENCY", cls.sync_concurrency),
            fast_forward=_env_bool("FAST_FORWARD", cls.fast_forward),
            probe_span=_env_int("PROBE_SPAN", cls.probe_span),
            range_cache_ttl=_env_int("RANGE_CACHE_TTL", cls.range_cache_ttl),
            burn_validation_ttl=_env_int("BURN_VALIDATION_TTL", cls.burn_validation_ttl),
            batch_size=_env_int("BATCH_SIZE", cls.batch_size),
            call_concurrency=_env_int("CALL_CONCURRENCY", cls.call_concurrency),
            max_retries=_env_int("MAX_RETRIES", cls.max_retries),
            retry_base_delay=_env_float("RETRY_BASE_DELAY", cls.retry_base_delay),
            rate_limit_multiplier=_env_float("RATE_LIMIT_MULTIPLIER", cls.rate_limit_multiplier),
            retry_max_delay=_env_float("RETRY_MAX_DELAY", cls.retry_max_delay),
            collections_file=os.getenv("COLLECTIONS_FILE", ""),
            log_level=os.getenv("LOG_LEVEL", cls.log_level).upper(),
            port=_env_int("PORT", cls.port),
            cors_origins=os.getenv("CORS_ORIGINS", cls.cors_origins),
            warm_up_on_start=_env_bool("WARM_UP_ON_START", cls.warm_up_on_start),
        )
