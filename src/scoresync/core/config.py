"""Application configuration using pydantic-settings with grouped env prefixes."""

from __future__ import annotations

from typing import Literal

from pydantic import BaseModel
from pydantic_settings import BaseSettings


class Rating(BaseModel):
    """One rating level shared by the metric definition and the rubric."""

    description: str
    points: float


DEFAULT_RATINGS: list[Rating] = [
    Rating(description="Exemplary", points=4),
    Rating(description="Beyond Target", points=3.5),
    Rating(description="Target", points=3),
    Rating(description="Approaching Target", points=2.5),
    Rating(description="Developing", points=2),
    Rating(description="Beginning", points=1.5),
    Rating(description="Needs Partial Support", points=1),
    Rating(description="Needs Full Support", points=0.5),
    Rating(description="No Evidence", points=0),
]


class CanvasConfig(BaseSettings):
    """Remote gradebook (Canvas LMS) connection configuration."""

    model_config = {"env_prefix": "SCORESYNC_CANVAS_"}

    base_url: str = "https://canvas.instructure.com"
    api_token: str = ""  # opaque credential supplied by the environment
    timeout: float = 30.0
    per_page: int = 100
    enrollment_cache_ttl: int = 900  # seconds


class WorkflowConfig(BaseSettings):
    """Update flow behaviour: remote object names, strategy and retry budgets."""

    model_config = {"env_prefix": "SCORESYNC_WORKFLOW_"}

    metric_name: str = "Current Score"
    assignment_name: str = "Current Score Assignment"
    rubric_name: str = "Current Score Rubric"
    max_points: float = 4
    mastery_threshold: float = 3
    ratings: list[Rating] = DEFAULT_RATINGS
    excluded_keywords: list[str] = []

    per_student_threshold: int = 25
    enable_score_updates: bool = True
    enable_override: bool = True
    override_scale_factor: float = 25.0  # 0-4 -> 0-100

    write_attempts: int = 3
    score_tolerance: float = 0.001
    score_verify_attempts: int = 50
    score_verify_interval: float = 5.0
    override_tolerance: float = 0.01
    override_verify_attempts: int = 3
    override_verify_interval: float = 2.0
    bulk_poll_interval: float = 2.0
    bulk_timeout: float = 1200.0  # 20 minutes
    import_poll_interval: float = 2.0
    import_poll_attempts: int = 15
    max_setup_passes: int = 6

    auto_approve_setup: bool = False
    export_summary: bool = True
    run_lock_ttl: int = 3600


class RedisConfig(BaseSettings):
    """Redis cache configuration."""

    model_config = {"env_prefix": "SCORESYNC_REDIS_"}

    host: str = "localhost"
    port: int = 6379
    db: int = 0
    namespace: str = "scoresync"


class S3Config(BaseSettings):
    """S3 artifact storage configuration."""

    model_config = {"env_prefix": "SCORESYNC_S3_"}

    bucket: str = "scoresync-artifacts"
    region: str = "us-east-1"
    endpoint_url: str | None = None  # LocalStack override


class ReadPathConfig(BaseSettings):
    """Grade snapshot read path (course grade display)."""

    model_config = {"env_prefix": "SCORESYNC_READS_"}

    worker_count: int = 3
    snapshot_ttl: int = 300  # 5 minutes


class AppSettings(BaseSettings):
    """Root application settings aggregating all sub-configs."""

    model_config = {"env_prefix": "SCORESYNC_"}

    environment: Literal["dev", "uat", "prod"] = "dev"
    log_level: str = "INFO"
    cache_backend: Literal["memory", "redis"] = "memory"
    artifact_store: Literal["local", "s3"] = "local"
    artifact_dir: str = "./artifacts"

    canvas: CanvasConfig = CanvasConfig()
    workflow: WorkflowConfig = WorkflowConfig()
    redis: RedisConfig = RedisConfig()
    s3: S3Config = S3Config()
    reads: ReadPathConfig = ReadPathConfig()
