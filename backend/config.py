"""Application configuration via environment variables."""

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # Radarr (movies)
    radarr_url: str = "http://localhost:7878"
    radarr_api_key: str = ""

    # Sonarr (series)
    sonarr_url: str = "http://localhost:8989"
    sonarr_api_key: str = ""

    # Jellyfin
    jellyfin_url: str = ""
    jellyfin_api_key: str = ""
    jellyfin_user_id: str = ""
    jellyfin_device_id: str = "cinema-playback"

    # "local" probes + transcodes here, "jellyfin" delegates to the media server
    playback_backend: str = "local"

    # Library-manager path prefix -> media-server path prefix, e.g. "/data:/media"
    media_path_map: str = ""
    # Only files below these roots are served locally; empty serves nothing
    media_roots: list[str] = []

    # FFmpeg
    ffprobe_path: str = "ffprobe"
    ffmpeg_path: str = "ffmpeg"
    transcode_dir: str = "/tmp/cinema-transcode"
    max_transcode_sessions: int = 2
    session_idle_timeout: float = 120.0
    session_reap_interval: float = 15.0
    hls_segment_seconds: int = 4

    # Jellyfin streaming
    max_streaming_bitrate: int = 20_000_000
    subtitle_delivery: str = "sidecar"  # "sidecar" | "burn_in"

    # Server
    public_base_url: str = ""
    cors_origin: str = "*"
    log_level: str = "INFO"
    http_timeout: float = 10.0
    host: str = "0.0.0.0"
    port: int = 3001

    model_config = {"env_prefix": "", "env_file": ".env"}

    @property
    def radarr_enabled(self) -> bool:
        return bool(self.radarr_url and self.radarr_api_key)

    @property
    def sonarr_enabled(self) -> bool:
        return bool(self.sonarr_url and self.sonarr_api_key)

    @property
    def jellyfin_enabled(self) -> bool:
        return bool(self.jellyfin_url and self.jellyfin_api_key)

    @property
    def uses_jellyfin(self) -> bool:
        return self.playback_backend == "jellyfin" and self.jellyfin_enabled


settings = Settings()
