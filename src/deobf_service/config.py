from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    app_env: str = "dev"
    app_version: str = "0.3.0"
    log_level: str = "INFO"

    ledger_backend: str = "sqlite"
    database_path: str = "data/ledger.db"
    work_dir: str = "temp"
    work_retention_hours: int = 6

    transformer_runtime: str = "dotnet"
    transformer_path: str = "attached_assets/MoonsecDeobfuscator-master/bin/Release/net8.0/MoonsecDeobfuscator.dll"
    transformer_flags: str = "-dev"
    transform_timeout_sec: int = 120
    max_concurrent_transforms: int = 4
    output_suffix: str = ".lua"

    max_file_mb: int = 25
    allowed_extensions: str = ".lua,.txt"
    link_scan_max_bytes: int = 1_000_000

    starting_balance: int = 3
    daily_claim_amount: int = 2
    daily_claim_interval_hours: int = 24

    admin_api_token: str = ""
    gift_role_id: str = "gift"
    gift_user_ids: str = ""

    api_base_url: str = "http://localhost:8900"
    telegram_bot_token: str = ""
    decompile_url: str = "https://luadec.metaworm.site/"

    @property
    def max_file_bytes(self) -> int:
        return self.max_file_mb * 1024 * 1024

    @property
    def extension_list(self) -> list[str]:
        return [x.strip().lower() for x in self.allowed_extensions.split(",") if x.strip()]

    @property
    def flag_list(self) -> list[str]:
        return self.transformer_flags.split()

    @property
    def gift_user_list(self) -> list[str]:
        return [x.strip() for x in self.gift_user_ids.split(",") if x.strip()]


settings = Settings()
