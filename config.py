"""
Configuration Module
====================
Centralized environment variable loading, validation, and access
for the cart, checkout and payment simulation layers.

Every setting has a default, so the engine starts with an empty
environment. Invalid values fail fast with ConfigurationError.

NO BUSINESS LOGIC - Pure configuration management only.
"""

import os
import logging
from typing import Optional, Dict, Any
from pathlib import Path
import structlog
from dotenv import load_dotenv


# ============================================================================
# LOGGING
# ============================================================================

logger = logging.getLogger(__name__)


# ============================================================================
# ENVIRONMENT LOADING
# ============================================================================

def load_environment():
    """
    Load environment variables from .env file if present.
    Safe to call multiple times.
    """
    env_path = Path(".env")
    if env_path.exists():
        load_dotenv(env_path)
        logger.info("Loaded environment from .env file")
    else:
        logger.debug("No .env file found, using system environment variables")


# Load on module import
load_environment()


# ============================================================================
# CONFIGURATION EXCEPTION
# ============================================================================

class ConfigurationError(Exception):
    """Raised when configuration is invalid or missing."""
    pass


# ============================================================================
# VALIDATION HELPERS
# ============================================================================

def _get_optional_env(key: str, default: str = None) -> Optional[str]:
    """
    Get optional environment variable.

    Args:
        key: Environment variable name
        default: Default value if not set

    Returns:
        Environment variable value or default
    """
    value = os.getenv(key, default)
    return value.strip() if value else default


def _get_bool_env(key: str, default: bool = False) -> bool:
    """Get boolean environment variable."""
    value = os.getenv(key, str(default)).lower()
    return value in ("true", "1", "yes", "on", "enabled")


def _get_float_env(key: str, default: float = None) -> Optional[float]:
    """
    Get float environment variable.

    Raises:
        ConfigurationError: If value is not a valid number
    """
    value = os.getenv(key)

    if not value:
        return default

    try:
        return float(value)
    except ValueError:
        raise ConfigurationError(
            f"Invalid numeric value for {key}: {value}"
        )


# ============================================================================
# CART CONFIGURATION
# ============================================================================

class CartConfig:
    """Cart line and deferred-removal configuration."""

    def __init__(self):
        # Window between a line reaching zero and its removal
        self.grace_period_seconds = _get_float_env(
            "CART_GRACE_PERIOD_SECONDS",
            3.0
        )

        if self.grace_period_seconds < 0:
            raise ConfigurationError(
                f"CART_GRACE_PERIOD_SECONDS must be >= 0: "
                f"{self.grace_period_seconds}"
            )

        self.currency = _get_optional_env("DEFAULT_CURRENCY", "UGX").upper()


# ============================================================================
# CHECKOUT CONFIGURATION
# ============================================================================

class CheckoutConfig:
    """Checkout settlement configuration."""

    def __init__(self):
        self.settlement_delay_seconds = _get_float_env(
            "CHECKOUT_SETTLEMENT_DELAY_SECONDS",
            1.0
        )

        if self.settlement_delay_seconds < 0:
            raise ConfigurationError(
                f"CHECKOUT_SETTLEMENT_DELAY_SECONDS must be >= 0: "
                f"{self.settlement_delay_seconds}"
            )

        self.success_message = _get_optional_env(
            "CHECKOUT_SUCCESS_MESSAGE",
            "Order placed successfully!"
        )


# ============================================================================
# PAYMENT SIMULATION CONFIGURATION
# ============================================================================

class PaymentConfig:
    """Mobile money payment simulator configuration."""

    def __init__(self):
        self.delay_seconds = _get_float_env("PAYMENT_DELAY_SECONDS", 2.5)
        self.success_rate = _get_float_env("PAYMENT_SUCCESS_RATE", 0.5)
        self.default_provider = _get_optional_env(
            "PAYMENT_DEFAULT_PROVIDER",
            "mtn"
        ).lower()

        if self.delay_seconds < 0:
            raise ConfigurationError(
                f"PAYMENT_DELAY_SECONDS must be >= 0: {self.delay_seconds}"
            )

        if not 0.0 <= self.success_rate <= 1.0:
            raise ConfigurationError(
                f"PAYMENT_SUCCESS_RATE must be between 0.0 and 1.0: "
                f"{self.success_rate}"
            )

        if self.default_provider not in ["mtn", "airtel"]:
            raise ConfigurationError(
                f"Invalid PAYMENT_DEFAULT_PROVIDER: {self.default_provider}. "
                f"Must be 'mtn' or 'airtel'"
            )


# ============================================================================
# LOGGING CONFIGURATION
# ============================================================================

class LoggingConfig:
    """Log level and debug flags."""

    def __init__(self):
        self.log_level = _get_optional_env("LOG_LEVEL", "INFO").upper()

        if self.log_level not in ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]:
            raise ConfigurationError(
                f"Invalid LOG_LEVEL: {self.log_level}"
            )

        self.debug_mode = _get_bool_env("DEBUG_MODE", False)


# ============================================================================
# MAIN CONFIGURATION CLASS
# ============================================================================

class Config:
    """
    Main configuration container.

    Loads and validates all configuration on initialization.
    """

    def __init__(self):
        """
        Initialize and validate all configuration.

        Raises:
            ConfigurationError: If any configuration value is invalid
        """
        try:
            self.cart = CartConfig()
            self.checkout = CheckoutConfig()
            self.payment = PaymentConfig()
            self.logging = LoggingConfig()

            logger.info("Configuration loaded and validated successfully")

        except ConfigurationError as e:
            logger.error(f"Configuration error: {str(e)}")
            raise

    def get_safe_summary(self) -> Dict[str, Any]:
        """Get configuration summary for diagnostics."""
        return {
            "cart": {
                "grace_period_seconds": self.cart.grace_period_seconds,
                "currency": self.cart.currency,
            },
            "checkout": {
                "settlement_delay_seconds": self.checkout.settlement_delay_seconds,
            },
            "payment": {
                "delay_seconds": self.payment.delay_seconds,
                "success_rate": self.payment.success_rate,
                "default_provider": self.payment.default_provider,
            },
            "log_level": self.logging.log_level,
        }


# ============================================================================
# SINGLETON INSTANCE
# ============================================================================

# Global configuration instance
_config: Optional[Config] = None


def get_config() -> Config:
    """
    Get global configuration instance.

    Initializes on first call.

    Raises:
        ConfigurationError: If configuration is invalid
    """
    global _config
    if _config is None:
        _config = Config()
    return _config


def reload_config() -> Config:
    """
    Reload configuration from environment.

    Useful for testing or dynamic reconfiguration.
    """
    global _config
    load_environment()
    _config = Config()
    logger.info("Configuration reloaded")
    return _config


def configure_logging(config: Optional[Config] = None):
    """
    Configure stdlib logging and route structlog through it.

    JSON output by default, console rendering when DEBUG_MODE is set.
    """
    config = config or get_config()
    level = getattr(logging, config.logging.log_level)

    logging.basicConfig(
        level=level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )
    logging.getLogger("asyncio").setLevel(logging.WARNING)

    processors = [
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.contextvars.merge_contextvars,
    ]

    if config.logging.debug_mode:
        processors.append(structlog.dev.ConsoleRenderer(colors=False))
    else:
        processors.append(structlog.processors.JSONRenderer())

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )
