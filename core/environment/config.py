import os
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Application settings using Pydantic Settings.

    Attributes
    ----------
    rpc_url : str
        HTTP JSON-RPC endpoint of the ledger node
    ws_url : str | None
        WebSocket endpoint for push subscriptions (polling is used when empty)
    redis_host : str
        Redis host for the index store
    redis_port : int
        Redis port
    redis_db : int
        Redis database number
    redis_password : str
        Redis password (optional)
    store_prefix : str
        Key prefix for every index store key
    contracts_file : str
        JSON file with the contract descriptors to index
    confirmations : int
        Number of blocks after which an event is final
    batch_size : int
        Block window size used during historical catch-up
    retry_delay : float
        Initial delay in seconds before a failed catch-up window is retried
    retry_max_delay : float
        Upper bound for the catch-up retry delay
    retry_max_attempts : int | None
        Attempts per window before catch-up gives up (None retries forever)
    reconnect_delay : float
        Initial delay in seconds before the push channel reconnects
    reconnect_max_delay : float
        Upper bound for the reconnection delay
    reconnect_max_attempts : int | None
        Reconnection attempts before the push channel gives up
    confirmation_interval : float
        Seconds between two confirmation sweeps
    poll_interval : float
        Seconds between two log polls when no push channel is configured
    explorer_api_url : str
        Etherscan-compatible API used to fetch missing ABIs
    explorer_api_key : str
        Explorer API key (optional)
    log_level : str
        Root logging level
    """

    rpc_url: str = "http://localhost:8545"
    ws_url: str | None = None

    redis_host: str = "localhost"
    redis_port: int = 6379
    redis_db: int = 0
    redis_password: str = ""
    store_prefix: str = "indexer"

    contracts_file: str = "contracts.json"

    confirmations: int = 12
    batch_size: int = 1000

    retry_delay: float = 5.0
    retry_max_delay: float = 60.0
    retry_max_attempts: int | None = None

    reconnect_delay: float = 5.0
    reconnect_max_delay: float = 60.0
    reconnect_max_attempts: int | None = None

    confirmation_interval: float = 30.0
    poll_interval: float = 2.0

    explorer_api_url: str = "https://api.etherscan.io/api"
    explorer_api_key: str = ""

    log_level: str = "INFO"

    model_config = SettingsConfigDict(
        env_file=os.getenv("ENV_FILE", ".env"),
        env_file_encoding="utf-8",
        case_sensitive=False
    )
