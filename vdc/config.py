"""Manager configuration."""

from pathlib import Path

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Manager settings loaded from environment variables."""

    # Root of the on-disk layout; per-VDC directories live in <root>/config/
    project_root: str = "/var/lib/vdc-manager"

    # Registry document (empty = <project_root>/config/vdc-registry.json)
    registry_file: str = ""

    # Namespace ownership markers (empty = <project_root>/config/.netns)
    namespace_state_dir: str = ""

    # Management addressing: one /24 per VDC, third octet in [first, last]
    management_supernet: str = "192.168.0.0/16"
    subnet_first_octet: int = 10
    subnet_last_octet: int = 254

    # Provisioning backend
    provider: str = "libvirt"
    libvirt_uri: str = "qemu:///system"
    image_store_path: str = ""  # Directory holding base qcow2 images
    base_image: str = "ubuntu-22.04.qcow2"  # Default image for devices without one

    # Concurrency limits
    max_concurrent_provisioning: int = 4

    # Registry lock
    lock_acquire_timeout: float = 30.0  # Time to wait for the registry lock
    lock_poll_interval: float = 0.05

    # Credentials
    ssh_key_type: str = "ed25519"

    # Logging configuration
    log_format: str = "text"  # "json" or "text"
    log_level: str = "INFO"

    class Config:
        env_prefix = "VDC_"

    @property
    def config_root(self) -> Path:
        return Path(self.project_root) / "config"

    @property
    def registry_path(self) -> Path:
        if self.registry_file:
            return Path(self.registry_file)
        return self.config_root / "vdc-registry.json"

    @property
    def namespace_state_path(self) -> Path:
        if self.namespace_state_dir:
            return Path(self.namespace_state_dir)
        return self.config_root / ".netns"

    @property
    def image_store(self) -> Path:
        if self.image_store_path:
            return Path(self.image_store_path)
        return Path(self.project_root) / "images"


settings = Settings()
