"""
Configuration for the CrewSync SDK.

Uses pydantic-settings for environment variable loading, so an embedding
application can tune the client with CREWSYNC_* variables.
"""

from dataclasses import dataclass

from pydantic import Field
from pydantic_settings import BaseSettings


class ClientSettings(BaseSettings):
    """Client configuration loaded from environment."""

    # Server connection
    base_url: str = Field(default="http://localhost:8081", description="CrewSync server URL")
    request_timeout: float = Field(default=10.0, description="Mutation/read timeout seconds")
    stream_read_timeout: float = Field(
        default=60.0,
        description="Seconds without any frame (heartbeats included) before the stream is dead",
    )

    # Reconnect backoff
    backoff_floor: float = Field(default=1.0, description="First reconnect delay seconds")
    backoff_ceiling: float = Field(default=15.0, description="Maximum reconnect delay seconds")
    backoff_factor: float = Field(default=2.0, description="Delay multiplier per failure")
    max_reconnect_attempts: int = Field(
        default=50, description="Consecutive failures before giving up"
    )

    # Reconciliation
    reconciliation_timeout: float = Field(
        default=10.0, description="Seconds before a pending drag is re-checked against the server"
    )
    notice_display_seconds: float = Field(default=3.5, description="How long a notice stays visible")

    model_config = {"env_prefix": "CREWSYNC_"}

    def backoff_policy(self) -> "BackoffPolicy":
        return BackoffPolicy(
            floor=self.backoff_floor,
            ceiling=self.backoff_ceiling,
            factor=self.backoff_factor,
            max_attempts=self.max_reconnect_attempts,
        )

    def reconciler_config(self) -> "ReconcilerConfig":
        return ReconcilerConfig(timeout=self.reconciliation_timeout)


@dataclass(frozen=True)
class BackoffPolicy:
    """Reconnect delay schedule.

    Attributes:
        floor: Delay after the first failure
        ceiling: Upper bound for any delay
        factor: Multiplier applied per consecutive failure
        max_attempts: Consecutive failures tolerated (0 = unlimited)
    """

    floor: float = 1.0
    ceiling: float = 15.0
    factor: float = 2.0
    max_attempts: int = 50

    def delay(self, failures: int) -> float:
        """Delay before the next attempt after `failures` consecutive failures."""
        if failures <= 0:
            return 0.0
        return min(self.floor * self.factor ** (failures - 1), self.ceiling)


@dataclass(frozen=True)
class ReconcilerConfig:
    """Optimistic update tuning.

    Attributes:
        timeout: Seconds a pending record may wait for confirmation
        sweep_interval: Seconds between expiry sweeps in run_timeouts()
    """

    timeout: float = 10.0
    sweep_interval: float = 1.0
