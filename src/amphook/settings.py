from pathlib import Path
from typing import Literal

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    amphook_data_dir: Path = Path("./data")

    # Remote signer keys (JWK-style document with {kid, n, e} entries)
    key_source_url: str = "https://cdn.ampproject.org/certs/signing_certs.json"
    key_cache_ttl_seconds: int = 24 * 60 * 60
    key_fetch_timeout_seconds: float = 10.0
    key_refresh_retry_seconds: int = 60  # min gap between failed refresh attempts
    require_fresh_keys: bool = False  # await refresh instead of serving a stale snapshot

    # Signature envelope
    signature_prefix: str = "rsa-sha256="
    signature_max_skew_seconds: int = 300
    verify_signatures: bool = True  # deployment switch, independent of no_keys_policy
    no_keys_policy: Literal["fail_closed", "fail_open"] = "fail_closed"

    # Submission store
    store_capacity: int = 10000
    persistence: Literal["memory", "file"] = "memory"
    persistence_queue_size: int = 256
    retention_days: int = 30
    max_form_bytes: int = 100_000

    # Admin surface
    admin_enabled: bool = True
    admin_username: str = "admin"
    admin_password: str = "admin123"

    # AMP-Email-Allow-Sender; comma separated via env AMP_ALLOWED_SENDERS, empty allows any sender
    amp_allowed_senders: str = ""

    def allowed_senders(self) -> list[str]:
        return [s.strip().lower() for s in self.amp_allowed_senders.split(",") if s.strip()]

    def submissions_dir(self) -> Path:
        return self.amphook_data_dir / "submissions"

settings = Settings()
