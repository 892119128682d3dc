from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="STORYBOARD_", env_file=".env", env_file_encoding="utf-8")

    app_name: str = "storyboard-video-service"
    host: str = "0.0.0.0"
    port: int = 3002
    public_base_url: str = "http://localhost:3002"

    # Local media store; images/, videos/ and audio/ live under media_root
    media_root: str = "data"

    # Media fetching
    fetch_timeout: float = 20.0
    fetch_max_redirects: int = 5

    # Storyboard defaults
    default_scene_duration: float = 3.0
    min_scene_duration: float = 0.1
    default_width: int = 1280
    default_height: int = 720
    default_fps: int = 30

    # Transcoding
    ffmpeg_binary: str = ""
    video_codec: str = "libx264"
    pixel_format: str = "yuv420p"
    audio_codec: str = "aac"

    # Generation backend (ComfyUI protocol)
    comfyui_url: str = "http://localhost:8188"
    comfyui_input_dir: str = "data/images"
    comfyui_timeout: float = 30.0
    comfyui_node_cache_ttl: float = 30.0
    image_poll_interval: float = 2.0
    image_poll_attempts: int = 120
    draft_video_poll_interval: float = 3.0
    draft_video_poll_attempts: int = 180
    high_video_poll_interval: float = 3.0
    high_video_poll_attempts: int = 300
    image_checkpoint: str = "realvisxlV40.safetensors"
    draft_video_checkpoint: str = "realisticVisionV51_v51VAE.safetensors"
    draft_motion_model: str = "mm_sd_v15_v2.ckpt"
    default_image_negative_prompt: str = (
        "blurry, low quality, worst quality, bad anatomy, extra limbs, watermark, text, deformed"
    )
    default_video_negative_prompt: str = "blurry, low quality, distorted, deformed"

    # Lip-sync post-process; {video}, {audio} and {output} are filled per clip
    lipsync_command: str = "python3 -m Wav2Lip --face {video} --audio {audio} --outfile {output}"
    lipsync_timeout: float = 600.0

    # Job events
    kafka_enabled: bool = False
    kafka_bootstrap_servers: str = "localhost:9092"
    kafka_updates_topic: str = "generation_jobs"


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
