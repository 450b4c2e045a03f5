from dataclasses import dataclass
from typing import Dict, Optional
import logging
import os


# ==================== Configuration ====================

ENV_PREFIX = "INVOICE_LEDGER_"


def _parse_bool(raw: str) -> bool:
    value = raw.strip().lower()
    if value in ("1", "true", "yes", "on"):
        return True
    if value in ("0", "false", "no", "off"):
        return False
    raise ValueError(f"Invalid boolean value: {raw!r}")


@dataclass(frozen=True)
class LedgerConfig:
    """Settings shared by the token, the invoice ledger and the demos"""
    token_decimals: int = 18
    max_description_length: int = 60
    faucet_amount: str = "1000"  # whole tokens, scaled by token_decimals
    reject_self_invoicing: bool = True

    def __post_init__(self):
        if self.token_decimals < 0 or self.token_decimals > 77:
            raise ValueError("token_decimals must be between 0 and 77")
        if self.max_description_length <= 0:
            raise ValueError("max_description_length must be positive")

    @classmethod
    def from_env(cls, environ: Optional[Dict[str, str]] = None) -> 'LedgerConfig':
        """
        Build a config from INVOICE_LEDGER_* variables.
        Unset variables keep their defaults.
        """
        environ = os.environ if environ is None else environ
        overrides = {}

        raw = environ.get(ENV_PREFIX + "TOKEN_DECIMALS")
        if raw is not None:
            overrides['token_decimals'] = int(raw)

        raw = environ.get(ENV_PREFIX + "MAX_DESCRIPTION_LENGTH")
        if raw is not None:
            overrides['max_description_length'] = int(raw)

        raw = environ.get(ENV_PREFIX + "FAUCET_AMOUNT")
        if raw is not None:
            overrides['faucet_amount'] = raw.strip()

        raw = environ.get(ENV_PREFIX + "REJECT_SELF_INVOICING")
        if raw is not None:
            overrides['reject_self_invoicing'] = _parse_bool(raw)

        return cls(**overrides)


DEFAULT_CONFIG = LedgerConfig()


# ==================== Logging ====================

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


def configure_logging(level: int = logging.INFO) -> None:
    """Quick configuration of logging for demos and scripts"""
    logging.basicConfig(level=level, format=LOG_FORMAT)
