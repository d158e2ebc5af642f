from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Installer settings loaded from environment variables."""

    # Backups of user-edited files (None = disabled)
    buildpatch_backup_dir: str | None = None

    # Retry budgets
    buildpatch_install_retries: int = 5
    buildpatch_move_retries: int = 5
    buildpatch_move_retry_delay: float = 0.5  # seconds between a failed copy and the next move

    # Polling interval for the installation phase (seconds)
    buildpatch_poll_interval: float = 0.1

    # Prerequisite installers
    buildpatch_prereq_restart_code: int = 3010

    # Reported in build stats only
    buildpatch_cloud_directory: str = ""

    # Logging
    buildpatch_log_level: str = "info"
    buildpatch_log_format: str = "json"  # "json" or "console"

    model_config = {"env_prefix": "", "case_sensitive": False, "env_file": ".env", "env_file_encoding": "utf-8"}


settings = Settings()
