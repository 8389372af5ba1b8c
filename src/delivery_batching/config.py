"""Application configuration and settings management."""

from pathlib import Path
from typing import Any, Literal, Optional

import json
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Runtime configuration loaded from environment variables or defaults."""

    model_config = SettingsConfigDict(
        env_prefix="BATCH_",
        case_sensitive=False,
        env_file=".env",
        env_file_encoding="utf-8",
    )

    app_name: str = "Delivery Batch Generator API"
    api_prefix: str = "/api"
    data_root: Path = Field(default=Path("data"), description="Root directory for static data and run reports.")
    zip_centroids_file: Path = Field(
        default=Path("data/zip_centroids.csv"),
        description="Optional CSV of ZIP code centroids (columns: zip_code, latitude, longitude).",
    )
    collection_points_file: Path = Field(
        default=Path("data/collection_points.xlsx"),
        description="Collection point workbook used when the database has none.",
    )
    osrm_base_url: Optional[str] = Field(
        default=None,
        description="Base URL for the OSRM routing service (e.g., https://router.project-osrm.org).",
    )
    osrm_profile: Literal["driving", "driving-hgv"] = Field(
        default="driving",
        description="OSRM profile to use when computing travel times.",
    )
    osrm_timeout_seconds: float = Field(default=4.0, gt=0.0)
    osrm_max_retries: int = Field(default=1, ge=0)
    osrm_backoff_seconds: float = Field(default=0.25, ge=0.0)
    osrm_max_total_seconds: float = Field(
        default=6.0,
        gt=0.0,
        description="Retries stop once another attempt would start after this many seconds.",
    )
    matrix_cache_ttl_seconds: float = Field(default=1800.0, ge=0.0)
    geocode_cache_ttl_seconds: float = Field(default=3600.0, ge=0.0)
    mapbox_token: Optional[str] = Field(
        default=None,
        description="Mapbox access token for forward geocoding. ZIP centroids are used when unset.",
    )
    geocoder_timeout_seconds: float = Field(default=5.0, gt=0.0)
    max_stops_per_batch: int = Field(default=37, ge=1)
    min_viable_batch_size: int = Field(default=30, ge=1)
    zip_prefix_length: int = Field(default=3, ge=1, le=5)
    batch_start_hour: int = Field(default=9, ge=0, le=23)
    stop_service_minutes: float = Field(default=10.0, ge=0.0)
    average_speed_kmh: float = Field(default=40.0, gt=0.0)
    tie_epsilon_km: float = Field(default=1e-6, ge=0.0)
    two_opt_enabled: bool = True
    force_fallback: bool = Field(
        default=False,
        description="Skip the routing service and always use the geographic heuristic.",
    )
    require_routing_service: bool = Field(
        default=False,
        description="Abort the run when no routing service is configured.",
    )
    max_parallel_requests: int = Field(default=8, ge=1)
    delivery_days: tuple[str, ...] = Field(default=("MON", "TUE", "WED", "THU", "FRI", "SAT"))
    persist_run_reports: bool = False
    frontend_allowed_origins: tuple[str, ...] = Field(
        default=(
            "http://localhost:5173",
            "http://127.0.0.1:5173",
            "http://localhost:8080",
        ),
        description="Permitted web origins for browser clients (CORS).",
    )

    # Supabase configuration
    supabase_url: Optional[str] = Field(
        default=None,
        description="Supabase project URL (e.g., https://xxx.supabase.co).",
    )
    supabase_key: Optional[str] = Field(
        default=None,
        description="Supabase service role key for backend operations.",
    )

    @field_validator("data_root", "zip_centroids_file", "collection_points_file", mode="before")
    @classmethod
    def _expand_path(cls, value: Any) -> Path:
        path_value = value if isinstance(value, Path) else Path(str(value))
        return path_value.expanduser().resolve()

    @field_validator("frontend_allowed_origins", "delivery_days", mode="before")
    @classmethod
    def _parse_str_tuple_from_env(cls, value: Any) -> tuple[str, ...]:
        """Parse string tuple from environment variable (comma-separated or JSON array)."""
        if isinstance(value, tuple):
            return value
        if isinstance(value, list):
            return tuple(str(item) for item in value)
        if isinstance(value, str):
            try:
                parsed = json.loads(value)
                if isinstance(parsed, list):
                    return tuple(str(item) for item in parsed)
            except (json.JSONDecodeError, TypeError):
                pass
            if "," in value:
                return tuple(item.strip() for item in value.split(",") if item.strip())
            if value.strip():
                return (value.strip(),)
        return tuple()

    @field_validator("delivery_days")
    @classmethod
    def _normalize_days(cls, value: tuple[str, ...]) -> tuple[str, ...]:
        known = {"MON", "TUE", "WED", "THU", "FRI", "SAT", "SUN"}
        days = tuple(day.strip().upper()[:3] for day in value if day.strip())
        unknown = [day for day in days if day not in known]
        if unknown:
            raise ValueError(f"Unknown delivery day(s): {', '.join(unknown)}")
        return days


settings = Settings()
