"""Configuration management for the marketplace value-transfer core"""

import os
import logging
from decimal import Decimal

logger = logging.getLogger(__name__)


def _env_bool(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).lower().strip() in ("1", "true", "yes", "on")


class Config:
    """Application configuration"""

    # Environment detection
    ENVIRONMENT = os.getenv("ENVIRONMENT", "development").lower().strip()
    IS_PRODUCTION = ENVIRONMENT == "production"
    CURRENT_ENVIRONMENT = "production" if IS_PRODUCTION else "development"
    DEBUG = _env_bool("DEBUG", "false" if IS_PRODUCTION else "true")

    # Database
    DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./marketplace.db")

    # Authentication (bearer JWT)
    JWT_SECRET = os.getenv("JWT_SECRET", "")
    JWT_ALGORITHM = os.getenv("JWT_ALGORITHM", "HS256")
    JWT_EXPIRE_MINUTES = int(os.getenv("JWT_EXPIRE_MINUTES", "10080"))  # 7 days

    CLIENT_URL = os.getenv("CLIENT_URL", "http://localhost:3000")

    # Blockchain RPC and contracts
    WEB3_RPC_URL = os.getenv("WEB3_RPC_URL", "")
    ADMIN_PRIVATE_KEY = os.getenv("ADMIN_PRIVATE_KEY", "")
    ESCROW_FACTORY_ADDRESS = os.getenv("ESCROW_FACTORY_ADDRESS", "")
    KOOSHCOIN_ADDRESS = os.getenv("KOOSHCOIN_ADDRESS", "")
    KOOSH_BURNER_ADDRESS = os.getenv("KOOSH_BURNER_ADDRESS", "")
    CONTRACT_ARTIFACTS_DIR = os.getenv("CONTRACT_ARTIFACTS_DIR", "")
    BLOCK_EXPLORER_URL = os.getenv("BLOCK_EXPLORER_URL", "")
    TOKEN_SYMBOL = os.getenv("TOKEN_SYMBOL", "KSH")
    TOKEN_DECIMALS = 18

    # RPC timeouts (seconds)
    RPC_TIMEOUT = int(os.getenv("RPC_TIMEOUT", "30"))
    RPC_SUBMIT_TIMEOUT = int(os.getenv("RPC_SUBMIT_TIMEOUT", "60"))
    ESCROW_RECEIPT_TIMEOUT = int(os.getenv("ESCROW_RECEIPT_TIMEOUT", "120"))
    APPROVE_RECEIPT_TIMEOUT = int(os.getenv("APPROVE_RECEIPT_TIMEOUT", "120"))
    APPROVE_PROPAGATION_DELAY = float(os.getenv("APPROVE_PROPAGATION_DELAY", "1.0"))

    # Gas policy
    GAS_FUNDING_MULTIPLIER = int(os.getenv("GAS_FUNDING_MULTIPLIER", "5"))
    GAS_LIMIT_MULTIPLIER = Decimal(os.getenv("GAS_LIMIT_MULTIPLIER", "1.6"))
    GAS_PRICE_MULTIPLIER = Decimal(os.getenv("GAS_PRICE_MULTIPLIER", "1.2"))
    ADMIN_GAS_MULTIPLIER = Decimal(os.getenv("ADMIN_GAS_MULTIPLIER", "1.2"))
    GAS_TRANSFER_LIMIT = 21000
    APPROVE_GAS_ESTIMATE = int(os.getenv("APPROVE_GAS_ESTIMATE", "200000"))
    BURN_GAS_ESTIMATE = int(os.getenv("BURN_GAS_ESTIMATE", "150000"))
    ESCROW_CALL_GAS_ESTIMATE = int(os.getenv("ESCROW_CALL_GAS_ESTIMATE", "200000"))

    # Key vault
    KEY_ENCRYPTION_SECRET = os.getenv("KEY_ENCRYPTION_SECRET", "")
    KEY_ENCRYPTION_MIN_LENGTH = 32

    # Razorpay payouts
    RAZORPAY_KEY_ID = os.getenv("RAZORPAY_KEY_ID", "")
    RAZORPAY_KEY_SECRET = os.getenv("RAZORPAY_KEY_SECRET", "")
    RAZORPAY_ACCOUNT_NUMBER = os.getenv("RAZORPAY_ACCOUNT_NUMBER", "")
    RAZORPAY_WEBHOOK_SECRET = os.getenv("RAZORPAY_WEBHOOK_SECRET", "")
    RAZORPAY_BASE_URL = os.getenv("RAZORPAY_BASE_URL", "https://api.razorpay.com/v1")
    RAZORPAY_TIMEOUT = int(os.getenv("RAZORPAY_TIMEOUT", "30"))
    RAZORPAY_PAYOUT_MODE = os.getenv("RAZORPAY_PAYOUT_MODE", "IMPS")
    RAZORPAY_MAX_RETRIES = int(os.getenv("RAZORPAY_MAX_RETRIES", "2"))

    # Money
    USD_TO_INR_RATE = Decimal(os.getenv("USD_TO_INR_RATE", "84"))
    MIN_CLAIM_AMOUNT_USD = Decimal(os.getenv("MIN_CLAIM_AMOUNT_USD", "10"))
    TAX_RATE = Decimal(os.getenv("TAX_RATE", "0.10"))
    PLATFORM_COMMISSION_RATE = Decimal(os.getenv("PLATFORM_COMMISSION_RATE", "0.10"))
    DEFAULT_VENDOR_COMMISSION_RATE = Decimal(os.getenv("DEFAULT_VENDOR_COMMISSION_RATE", "5.0"))

    # Background verifier
    ENABLE_BACKGROUND_VERIFIER = _env_bool("ENABLE_BACKGROUND_VERIFIER", "true")
    BURN_VERIFICATION_INTERVAL = int(os.getenv("BURN_VERIFICATION_INTERVAL", "30"))
    BURN_VERIFY_GRACE_SECONDS = int(os.getenv("BURN_VERIFY_GRACE_SECONDS", "15"))
    BURN_MAX_AGE_HOURS = int(os.getenv("BURN_MAX_AGE_HOURS", "24"))
    BURN_OLD_RECHECK_SECONDS = int(os.getenv("BURN_OLD_RECHECK_SECONDS", "600"))
    BURN_STALE_LOG_HOURS = int(os.getenv("BURN_STALE_LOG_HOURS", "2"))
    VERIFIER_BATCH_LIMIT = int(os.getenv("VERIFIER_BATCH_LIMIT", "20"))
    PAYOUT_SYNC_GRACE_SECONDS = int(os.getenv("PAYOUT_SYNC_GRACE_SECONDS", "120"))
    ESCROW_PENDING_ACTION_TTL = int(os.getenv("ESCROW_PENDING_ACTION_TTL", "900"))
    ESCROW_RECONCILE_GRACE_SECONDS = int(os.getenv("ESCROW_RECONCILE_GRACE_SECONDS", "300"))

    # Dispute evidence
    DISPUTE_UPLOAD_DIR = os.getenv("DISPUTE_UPLOAD_DIR", "uploads/dispute-proofs")
    DISPUTE_PROOF_TTL_DAYS = int(os.getenv("DISPUTE_PROOF_TTL_DAYS", "7"))
    DISPUTE_MAX_IMAGES = int(os.getenv("DISPUTE_MAX_IMAGES", "5"))
    DISPUTE_MAX_IMAGE_BYTES = int(os.getenv("DISPUTE_MAX_IMAGE_BYTES", str(5 * 1024 * 1024)))

    @staticmethod
    def is_chain_configured() -> bool:
        return bool(Config.WEB3_RPC_URL and Config.ADMIN_PRIVATE_KEY)

    @staticmethod
    def is_razorpay_configured() -> bool:
        return bool(
            Config.RAZORPAY_KEY_ID
            and Config.RAZORPAY_KEY_SECRET
            and Config.RAZORPAY_ACCOUNT_NUMBER
        )

    @staticmethod
    def validate_chain_configuration():
        """Validate blockchain configuration and log status"""
        logger.info("🔧 Blockchain Configuration:")
        logger.info(f"   WEB3_RPC_URL: {'✅ Configured' if Config.WEB3_RPC_URL else '❌ Missing'}")
        logger.info(f"   ADMIN_PRIVATE_KEY: {'✅ Configured' if Config.ADMIN_PRIVATE_KEY else '❌ Missing'}")
        logger.info(f"   ESCROW_FACTORY_ADDRESS: {Config.ESCROW_FACTORY_ADDRESS or 'not set'}")
        logger.info(f"   KOOSHCOIN_ADDRESS: {Config.KOOSHCOIN_ADDRESS or 'not set'}")
        logger.info(f"   KOOSH_BURNER_ADDRESS: {Config.KOOSH_BURNER_ADDRESS or 'not set'}")

        if not Config.is_chain_configured():
            logger.warning("⚠️ Blockchain not configured - escrow and burn operations will return 503")
            return False
        return True

    @staticmethod
    def validate_key_vault_configuration():
        """Validate key encryption secret strength"""
        if not Config.KEY_ENCRYPTION_SECRET:
            logger.warning("⚠️ KEY_ENCRYPTION_SECRET not configured - key vault disabled")
            return False
        if len(Config.KEY_ENCRYPTION_SECRET) < Config.KEY_ENCRYPTION_MIN_LENGTH:
            logger.critical(
                f"🚨 KEY_ENCRYPTION_SECRET too short: must be at least "
                f"{Config.KEY_ENCRYPTION_MIN_LENGTH} characters"
            )
            return False
        logger.info("   KEY_ENCRYPTION_SECRET: ✅ Configured")
        return True

    @staticmethod
    def validate_webhook_security_configuration():
        """Validate webhook security configuration for production safety"""
        logger.info("🔧 Webhook Security Configuration:")
        if Config.RAZORPAY_WEBHOOK_SECRET:
            logger.info("   RAZORPAY_WEBHOOK_SECRET: ✅ Configured")
            return True
        if Config.IS_PRODUCTION:
            logger.critical("🚨 PRODUCTION_SECURITY_RISK: RAZORPAY_WEBHOOK_SECRET not configured!")
            logger.critical("   Razorpay webhooks will be REJECTED without this secret")
        else:
            logger.warning("⚠️ RAZORPAY_WEBHOOK_SECRET not configured - payout webhooks will be rejected")
        return False

    @staticmethod
    def validate_payout_configuration():
        """Validate payout provider configuration and log status"""
        logger.info("🔧 Payout Configuration:")
        logger.info(f"   USD_TO_INR_RATE: {Config.USD_TO_INR_RATE}")
        logger.info(f"   MIN_CLAIM_AMOUNT_USD: {Config.MIN_CLAIM_AMOUNT_USD}")
        if Config.is_razorpay_configured():
            logger.info("   Razorpay Payouts: ✅ Configured")
            return True
        logger.warning("🔒 Razorpay Payouts not configured - payouts will be routed to manual processing")
        return False

    @staticmethod
    def validate_auth_configuration():
        if not Config.JWT_SECRET:
            if Config.IS_PRODUCTION:
                logger.critical("🚨 JWT_SECRET not configured in production - all authenticated requests will fail")
            else:
                logger.warning("⚠️ JWT_SECRET not configured - authenticated endpoints will reject requests")
            return False
        return True

    @staticmethod
    def log_environment_config():
        """Log current environment configuration for debugging"""
        logger.info("🔧 Marketplace Environment Configuration:")
        logger.info(f"   Environment: {Config.CURRENT_ENVIRONMENT.upper()}")
        logger.info(f"   Debug: {Config.DEBUG}")
        Config.validate_auth_configuration()
        Config.validate_key_vault_configuration()
        Config.validate_chain_configuration()
        Config.validate_payout_configuration()
        Config.validate_webhook_security_configuration()
