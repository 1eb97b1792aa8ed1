"""Harness settings with Pydantic validation and environment loading."""

from __future__ import annotations

import ipaddress
from functools import lru_cache
from typing import List, Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class HarnessSettings(BaseSettings):
    """Harness settings loaded from MESHVERIFY_* environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="MESHVERIFY_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Build context
    context_dir: str = Field(
        default=".", description="Docker build context, also the base for relative mounts"
    )
    control_plane_dockerfile: str = "Dockerfile"
    client_dockerfile: str = "Dockerfile.tailscale"
    client_version_build_arg: str = "TAILSCALE_VERSION"
    image_prefix: str = Field(
        default="meshverify", description="Tag prefix for images built by the harness"
    )

    # Network and control plane
    network_name: str = "headscale-test"
    control_plane_name: str = "headscale"
    control_plane_port: int = Field(default=8080, ge=1, le=65535)
    control_plane_host_port: int | None = Field(
        default=8080, ge=1, le=65535, description="Host binding, unset for an ephemeral port"
    )
    control_plane_command: List[str] = Field(
        default_factory=lambda: ["headscale", "serve"]
    )
    control_plane_mounts: List[str] = Field(
        default_factory=lambda: [
            "integration_test/etc:/etc/headscale",
            "derp.yaml:/etc/headscale/derp.yaml",
        ],
        description="host:container bind mounts, host side relative to context_dir",
    )
    health_path: str = "/health"

    # Fleet
    client_count: int = Field(default=25, ge=2, description="Number of client nodes")
    client_versions: List[str] = Field(
        default_factory=lambda: ["1.14.3", "1.12.3"],
        description="Client versions, assigned round-robin to slots",
    )
    hostname_prefix: str = "tailscale"
    client_command: List[str] = Field(
        default_factory=lambda: [
            "tailscaled",
            "--tun=userspace-networking",
            "--socks5-server=localhost:1055",
        ]
    )

    # Enrollment
    namespace: str = "test"
    credential_expiry: str = Field(
        default="24h", description="Lifetime of the reusable enrollment key"
    )

    # Readiness gate
    readiness_timeout: float = Field(default=60.0, gt=0)
    readiness_initial_interval: float = Field(default=0.5, gt=0)
    readiness_max_interval: float = Field(default=5.0, gt=0)
    health_request_timeout: float = Field(default=5.0, gt=0)

    # Convergence
    convergence_poll: bool = Field(
        default=True, description="Poll node status instead of sleeping after joins"
    )
    convergence_timeout: float = Field(default=120.0, gt=0)
    settle_seconds: float = Field(
        default=60.0, ge=0, description="Fixed wait after joins when polling is off"
    )

    # Verification
    overlay_prefix: str = "100.64.0.0/10"
    node_list_header_lines: int = Field(default=1, ge=0)
    ping_timeout: str = "1s"
    ping_count: int = Field(default=20, ge=1)
    ping_success_marker: str = "pong"
    verification_workers: int = Field(default=16, ge=1)

    # Diagnostics
    log_dir: str = "test_output"
    preserve_client_logs: bool = True

    # Run
    run_timeout: float = Field(
        default=3600.0, gt=0, description="Global deadline checked between phases"
    )
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = "INFO"
    log_format: Literal["json", "text"] = "text"

    @field_validator("client_versions")
    @classmethod
    def versions_not_empty(cls, v: List[str]) -> List[str]:
        """Round-robin assignment needs at least one version."""
        versions = [item.strip() for item in v if item and item.strip()]
        if not versions:
            raise ValueError("client_versions must contain at least one version")
        return versions

    @field_validator("overlay_prefix")
    @classmethod
    def valid_prefix(cls, v: str) -> str:
        try:
            ipaddress.ip_network(v, strict=True)
        except ValueError as exc:
            raise ValueError(f"overlay_prefix is not a network: {v}") from exc
        return v

    @field_validator("log_level", mode="before")
    @classmethod
    def upper_level(cls, v):
        return v.upper() if isinstance(v, str) else v

    @property
    def overlay_network(self) -> ipaddress.IPv4Network | ipaddress.IPv6Network:
        return ipaddress.ip_network(self.overlay_prefix)

    @property
    def control_plane_port_key(self) -> str:
        """Docker port key for the control plane's HTTP listener."""
        return f"{self.control_plane_port}/tcp"


@lru_cache
def get_settings() -> HarnessSettings:
    """Get cached settings instance."""
    return HarnessSettings()
