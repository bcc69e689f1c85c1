from __future__ import annotations

from dataclasses import dataclass


@dataclass
class GatewayConfig:
    page_size: int = 50
    conversation_list_limit: int = 200
    max_name_length: int = 80
    max_content_length: int = 4000
    max_images: int = 10
    max_image_bytes: int = 8 * 1024 * 1024
    max_share_ref_length: int = 128
    upload_dir: str = "uploads"
    session_ttl_ms: int = 60 * 60 * 1000
    log_level: str = "INFO"
