from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    gtfs_dir: str = "data/tallinn"
    gtfs_snapshot_dir: str = "data/gtfs-preprocessed"
    gtfs_zip_url: str = ""
    gps_url: str = "https://gis.ee/tallinn/gps.php"
    siri_url: str = "https://transport.tallinn.ee/siri-stop-departures.php"
    feed_timezone: str = "Europe/Tallinn"
    poll_interval_seconds: int = 10
    http_timeout_seconds: float = 10.0
    model_load_timeout_seconds: float = 300.0
    arrivals_cache_ttl_seconds: float = 5.0
    redis_url: str = ""
    # Stop catalogue bounds: min_lat, min_lon, max_lat, max_lon
    service_area: list[float] = [59.35, 24.55, 59.55, 25.05]
    cors_origins: list[str] = ["*"]

    model_config = {"env_prefix": "", "case_sensitive": False}


settings = Settings()
