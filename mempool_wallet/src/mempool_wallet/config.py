"""
Configuration management using pydantic-settings.
"""

from pydantic_settings import BaseSettings, SettingsConfigDict

from mempool_wallet.models import NetworkType


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="MEMPOOL_WALLET_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    hostname: str = "mempool.space"
    network: NetworkType = NetworkType.MAINNET
    secure: bool = True

    connect_timeout: float = 5.0
    heartbeat_interval: float = 15.0
    stale_timeout: float = 180.0
    request_timeout: float = 30.0

    max_frame_size: int = 2097152  # 2MB

    @property
    def network_path(self) -> str:
        if self.network in (NetworkType.TESTNET, NetworkType.SIGNET):
            return f"/{self.network.value}"
        return ""

    @property
    def api_url(self) -> str:
        scheme = "https" if self.secure else "http"
        return f"{scheme}://{self.hostname}{self.network_path}/api"

    @property
    def ws_url(self) -> str:
        scheme = "wss" if self.secure else "ws"
        return f"{scheme}://{self.hostname}{self.network_path}/api/v1/ws"


def get_settings() -> Settings:
    return Settings()
