import os


def _float_list(raw: str) -> tuple:
    return tuple(float(x) for x in raw.split(',') if x.strip())


class Config:
    SQLALCHEMY_DATABASE_URI = os.environ.get('DATABASE_URL', 'sqlite:///hub_dev.db')
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    SECRET_KEY = os.environ.get('FLASK_SECRET_KEY', 'dev-secret-key-change-me')

    # Dev mode: allows http:// webhook URLs and SQLite
    # Defaults to False; must be explicitly enabled via DEV_MODE=true
    DEV_MODE = os.environ.get('DEV_MODE', 'false').lower() in ('true', '1', 'yes')

    # Chain (Base L2)
    RPC_URL = os.environ.get('RPC_URL', '')
    USDC_CONTRACT = os.environ.get('USDC_CONTRACT', '0x833589fCD6eDb6E08f4c7C32D4f71b54bdA02913')
    PAYMENT_MIN_CONFIRMATIONS = int(os.environ.get('PAYMENT_MIN_CONFIRMATIONS', '0'))

    # Webhook delivery to agents
    WEBHOOK_MAX_ATTEMPTS = int(os.environ.get('WEBHOOK_MAX_ATTEMPTS', '4'))
    WEBHOOK_TIMEOUT_SECONDS = float(os.environ.get('WEBHOOK_TIMEOUT_SECONDS', '30'))
    WEBHOOK_RETRY_DELAYS = _float_list(os.environ.get('WEBHOOK_RETRY_DELAYS', '0,1,2,4'))
    WEBHOOK_POOL_SIZE = int(os.environ.get('WEBHOOK_POOL_SIZE', '8'))

    # Task processor for agents without a webhook (OpenAI-compatible)
    TASK_PROCESSOR_BASE_URL = os.environ.get('TASK_PROCESSOR_BASE_URL', 'https://openrouter.ai/api/v1')
    TASK_PROCESSOR_API_KEY = os.environ.get('TASK_PROCESSOR_API_KEY', '')
    TASK_PROCESSOR_MODEL = os.environ.get('TASK_PROCESSOR_MODEL', 'openai/gpt-4o')
    TASK_PROCESSOR_TIMEOUT_SECONDS = int(os.environ.get('TASK_PROCESSOR_TIMEOUT_SECONDS', '30'))

    # Wallet challenge nonces
    NONCE_TTL_SECONDS = int(os.environ.get('NONCE_TTL_SECONDS', '300'))

    # Operator: Ethereum address authorized to resolve disputes
    OPERATOR_ADDRESS = os.environ.get('OPERATOR_ADDRESS', '')
    OPERATOR_SIGNATURE_MAX_AGE = int(os.environ.get('OPERATOR_SIGNATURE_MAX_AGE', '300'))  # seconds

    @classmethod
    def validate_production(cls):
        """Startup check: reject dev-only settings outside DEV_MODE."""
        if not cls.DEV_MODE and 'sqlite' in cls.SQLALCHEMY_DATABASE_URI:
            raise RuntimeError(
                "FATAL: SQLite is not supported in production mode. "
                "Set DATABASE_URL to a PostgreSQL connection string, "
                "or set DEV_MODE=true for development."
            )
        if not cls.DEV_MODE and cls.SECRET_KEY == 'dev-secret-key-change-me':
            raise RuntimeError(
                "FATAL: SECRET_KEY must be changed from default in production. "
                "Set FLASK_SECRET_KEY environment variable."
            )
        if not cls.DEV_MODE and not cls.OPERATOR_ADDRESS:
            raise RuntimeError(
                "FATAL: OPERATOR_ADDRESS must be set in production. "
                "Set the OPERATOR_ADDRESS environment variable to the "
                "Ethereum address authorized to resolve disputes."
            )
