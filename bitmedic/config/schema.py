"""Configuration schema using Pydantic."""

from pathlib import Path
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel
from pydantic_settings import BaseSettings


class Base(BaseModel):
    """Base model that accepts both camelCase and snake_case keys."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class MeshConfig(Base):
    """Mesh identity and inbound traffic handling."""

    node_id: str = ""               # Unique node identifier (auto-generated from hostname if empty)
    nickname: str = ""              # Name shown to peers in search responses (defaults to node_id)
    dedupe_window: float = 30.0     # Seconds; identical gateway commands inside this window run once
    broadcast_retries: int = 2      # Extra attempts when a mesh broadcast fails


class BackendConfig(Base):
    """Remote HTTP service used by gateways."""

    search_url: str = "https://partialsearchpatientname-uob3euoulq-uc.a.run.app/"
    search_method: Literal["GET", "POST"] = "GET"
    create_url: str = "https://jsonplaceholder.typicode.com/posts"
    passthrough_url: str = "https://jsonplaceholder.typicode.com/posts"
    request_timeout: float = 10.0   # Seconds per HTTP call
    search_result_limit: int = 5    # Records kept from one search response


class ConnectivityConfig(Base):
    """Internet reachability probing."""

    check_url: str = "https://www.google.com"
    check_timeout: float = 5.0
    check_interval: float = 10.0    # Seconds between periodic checks. 0 = check only on demand.
    assume_online: bool = False     # Initial state before the first check completes


class GatewayConfig(Base):
    """Request lifecycle timing."""

    search_timeout: float = 10.0
    create_timeout: float = 15.0
    search_debounce: float = 1.0    # Delay before a typed query is broadcast
    min_query_length: int = 2       # Shorter queries are answered from the local store only


class StoreConfig(Base):
    """Local patient repository."""

    path: str = "~/.bitmedic/patients.json"

    @property
    def expanded_path(self) -> Path:
        return Path(self.path).expanduser()


class Config(BaseSettings):
    """Root configuration for bitmedic."""

    mesh: MeshConfig = Field(default_factory=MeshConfig)
    backend: BackendConfig = Field(default_factory=BackendConfig)
    connectivity: ConnectivityConfig = Field(default_factory=ConnectivityConfig)
    gateway: GatewayConfig = Field(default_factory=GatewayConfig)
    store: StoreConfig = Field(default_factory=StoreConfig)

    model_config = ConfigDict(env_prefix="BITMEDIC_", env_nested_delimiter="__")
