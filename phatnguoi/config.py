"""
Settings from environment variables.

All config is loaded via Pydantic Settings with the PHATNGUOI_ prefix.
"""

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # Supabase
    supabase_url: str = ""
    supabase_service_role_key: str = ""

    # CSGT website
    csgt_base_url: str = "https://www.csgt.vn"
    csgt_lookup_path: str = "/tra-cuu-phuong-tien-vi-pham.html"
    csgt_captcha_path: str = "/lib/captcha/captcha.class.php"
    csgt_validate_path: str = "/?mod=contact&task=tracuu_post&ajax"
    csgt_request_timeout_seconds: float = 30.0
    csgt_user_agent: str = (
        "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 "
        "(KHTML, like Gecko) Chrome/141.0.0.0 Safari/537.36"
    )

    # Lookup retry policy
    lookup_max_retries: int = 5
    lookup_retry_base_delay_seconds: float = 2.0

    # Captcha solving
    captcha_method: str = "ocr"  # "ocr" | "autocaptcha" | "llm"
    captcha_correction_threshold: float = 50.0
    captcha_low_confidence_threshold: float = 30.0
    captcha_reject_low_confidence: bool = False
    captcha_debug_dir: str = ""
    autocaptcha_url: str = "https://autocaptcha.pro/apiv3/process"
    autocaptcha_key: str = ""
    autocaptcha_timeout_seconds: float = 90.0
    captcha_llm_api_key: str = ""
    captcha_llm_model: str = "claude-haiku-4-5-20251001"

    # OCR engine pool
    ocr_engine: str = "tesseract"  # "tesseract" | "easyocr"
    ocr_max_workers: int = 3
    ocr_timeout_seconds: float = 15.0
    tesseract_cmd: str = "tesseract"

    # Scheduled re-checks
    cron_enabled: bool = True
    cron_schedule: str = "0 9 * * *"
    cron_job_delay_seconds: float = 2.0

    # Telegram
    telegram_bot_token: str = ""
    telegram_api_base_url: str = "https://api.telegram.org"
    telegram_polling_enabled: bool = True
    telegram_poll_timeout_seconds: int = 30
    # How long shutdown waits for in-flight bot messages before cancelling them
    telegram_shutdown_grace_seconds: float = 60.0

    # Admin alerts (email)
    smtp_host: str = ""
    smtp_port: int = 587
    smtp_username: str = ""
    smtp_password: str = ""
    smtp_from_email: str = ""
    smtp_use_tls: bool = True
    admin_alert_recipients: str = ""

    # REST API
    api_host: str = "0.0.0.0"
    api_port: int = 3000

    # App
    timezone: str = "Asia/Ho_Chi_Minh"

    model_config = {
        "env_file": ".env",
        "env_prefix": "PHATNGUOI_",
    }


settings = Settings()
