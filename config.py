# config.py
from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

from dotenv import load_dotenv
from eth_account import Account
from web3 import Web3

from errors import ConfigurationMissing

load_dotenv()

logger = logging.getLogger(__name__)

DEFAULT_ABI_PATH = "./abi.json"


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        raise ConfigurationMissing(f"{name} must be a number, got {raw!r}")


def load_abi(path: Path) -> List[Dict[str, Any]]:
    """
    Load a contract ABI from disk.

    Accepts either a bare ABI list or a build artifact object carrying an
    "abi" key (Foundry / Hardhat output).
    """
    if not path.exists():
        raise ConfigurationMissing(f"ABI file not found: {path}")

    try:
        with path.open() as f:
            data = json.load(f)
    except (OSError, ValueError) as e:
        raise ConfigurationMissing(f"Failed to parse ABI file {path}: {e}")

    abi = data.get("abi") if isinstance(data, dict) else data
    if not isinstance(abi, list) or not abi:
        raise ConfigurationMissing(f"No usable ABI in {path}")
    return abi


@dataclass(frozen=True)
class Settings:
    private_key: str
    rpc_url: str
    contract_address: str
    abi: List[Dict[str, Any]]
    host: str = "0.0.0.0"
    port: int = 3000
    chain_id: Optional[int] = None
    read_timeout: float = 10.0
    submit_timeout: float = 30.0
    receipt_timeout: float = 120.0
    receipt_poll_interval: float = 2.0
    confirmations: int = 1
    cors_origins: List[str] = field(default_factory=lambda: ["*"])
    revoke_requires_signature: bool = True
    admin_api_key: str = ""
    database_url: str = ""
    log_level: str = "INFO"


def load_settings() -> Settings:
    """Read settings from the environment. Raises ConfigurationMissing."""
    # ------------------------------------------------------------
    # Required: signer, network, contract
    # ------------------------------------------------------------
    missing = [
        name for name in ("PRIVATE_KEY", "RPC_URL", "CONTRACT_ADDRESS")
        if not os.getenv(name, "").strip()
    ]
    if missing:
        raise ConfigurationMissing(
            "Missing required environment variables: " + ", ".join(missing),
            {"missing": missing},
        )

    private_key = os.environ["PRIVATE_KEY"].strip()
    try:
        Account.from_key(private_key)
    except Exception as e:
        raise ConfigurationMissing(f"PRIVATE_KEY is not a valid signing key ({type(e).__name__})")

    contract_address = os.environ["CONTRACT_ADDRESS"].strip()
    if not Web3.is_address(contract_address):
        raise ConfigurationMissing(f"CONTRACT_ADDRESS is not an address: {contract_address}")

    abi = load_abi(Path(os.getenv("CONTRACT_ABI_PATH", DEFAULT_ABI_PATH)))

    # ------------------------------------------------------------
    # Optional
    # ------------------------------------------------------------
    chain_id = os.getenv("CHAIN_ID")

    try:
        port = int(os.getenv("PORT", "3000"))
    except ValueError:
        raise ConfigurationMissing("PORT must be an integer")

    settings = Settings(
        private_key=private_key,
        rpc_url=os.environ["RPC_URL"].strip(),
        contract_address=Web3.to_checksum_address(contract_address),
        abi=abi,
        host=os.getenv("HOST", "0.0.0.0"),
        port=port,
        chain_id=int(chain_id) if chain_id and chain_id.isdigit() else None,
        read_timeout=_env_float("READ_TIMEOUT", 10.0),
        submit_timeout=_env_float("SUBMIT_TIMEOUT", 30.0),
        receipt_timeout=_env_float("RECEIPT_TIMEOUT", 120.0),
        receipt_poll_interval=_env_float("RECEIPT_POLL_INTERVAL", 2.0),
        confirmations=max(1, int(_env_float("CONFIRMATIONS", 1))),
        cors_origins=cors_origins(),
        revoke_requires_signature=_env_bool("REVOKE_REQUIRES_SIGNATURE", True),
        admin_api_key=os.getenv("ADMIN_API_KEY", ""),
        database_url=os.getenv("DATABASE_URL", ""),
        log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
    )

    logger.info("Config loaded:")
    logger.info("  CONTRACT_ADDRESS: %s", settings.contract_address)
    logger.info("  RPC_URL: %s%s", settings.rpc_url[:48], "…" if len(settings.rpc_url) > 48 else "")
    logger.info("  ABI entries: %d", len(settings.abi))
    logger.info("  REVOKE_REQUIRES_SIGNATURE: %s", settings.revoke_requires_signature)
    logger.info("  DATABASE_URL: %s", "<set>" if settings.database_url else "<unset>")
    return settings


def cors_origins() -> List[str]:
    origins = [o.strip() for o in os.getenv("CORS_ORIGINS", "*").split(",") if o.strip()]
    return origins or ["*"]
