import os
import tomllib
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Mapping

from xrpl import CryptoAlgorithm
from xrpl.utils import XRPRangeException, xrp_to_drops

import metarelayer.constants as C
from metarelayer.errors import ConfigurationError

pkg_root = Path(__file__).parent
config_file = pkg_root / "config.toml"


@dataclass(frozen=True, slots=True)
class RelayerConfig:
    rpc_url: str
    signer_seeds: tuple[str, ...]
    treasury_seed: str
    threshold_drops: int
    venue_address: str
    proof_base_url: str
    algorithm: CryptoAlgorithm = CryptoAlgorithm.SECP256K1
    rpc_timeout: float = C.RPC_TIMEOUT
    probe_retries: int = C.PROBE_RETRIES
    probe_delay: float = C.PROBE_DELAY
    rebalance_interval: float = 0
    call_value_drops: int = C.DEFAULT_CALL_VALUE_DROPS
    proof_timeout: float = C.PROOF_TIMEOUT
    confirm_timeout: float | None = None  # None: wait for validation indefinitely
    host: str = "0.0.0.0"
    port: int = C.DEFAULT_PORT


def _required(section: dict, key: str, where: str) -> str:
    value = section.get(key)
    if value is None or (isinstance(value, str) and not value.strip()):
        raise ConfigurationError(f"Missing required configuration value [{where}] {key}")
    return str(value).strip()


def _threshold_drops(raw) -> int:
    try:
        xrp = Decimal(str(raw))
        drops = int(xrp_to_drops(xrp))
    except (InvalidOperation, XRPRangeException, TypeError, ValueError) as e:
        raise ConfigurationError(f"Invalid rebalance threshold {raw!r}: {e}") from e
    if drops <= 0:
        raise ConfigurationError(f"Rebalance threshold must be positive, got {raw!r}")
    return drops


def _seeds(raw) -> tuple[str, ...]:
    if isinstance(raw, str):
        raw = raw.split(",")
    return tuple(s.strip() for s in raw or [] if s and s.strip())


def load_config(path: str | Path | None = None, env: Mapping[str, str] | None = None) -> RelayerConfig:
    """Read the TOML config, apply environment overrides and validate.

    An empty signer list is accepted here; SignerPool.count() is what makes
    it fatal, before any relay or rebalance is attempted.
    """
    env = os.environ if env is None else env
    path = Path(path or env.get("RELAYER_CONFIG") or config_file)
    try:
        cfg = tomllib.loads(path.read_text())
    except FileNotFoundError as e:
        raise ConfigurationError(f"Config file not found: {path}") from e
    except tomllib.TOMLDecodeError as e:
        raise ConfigurationError(f"Config file {path} is not valid TOML: {e}") from e

    ledger = cfg.get("ledger", {})
    signers = cfg.get("signers", {})
    treasury = cfg.get("treasury", {})
    rebalance = cfg.get("rebalance", {})
    venue = cfg.get("venue", {})
    proof = cfg.get("proof", {})
    timeout = cfg.get("timeout", {})
    server = cfg.get("server", {})

    if "RPC_URL" in env:
        ledger["rpc_url"] = env["RPC_URL"]
    if "SIGNER_SEEDS" in env:
        signers["seeds"] = env["SIGNER_SEEDS"]
    if "TREASURY_SEED" in env:
        treasury["seed"] = env["TREASURY_SEED"]
    if "VENUE_ADDRESS" in env:
        venue["address"] = env["VENUE_ADDRESS"]
    if "PROOF_API_BASE" in env:
        proof["base_url"] = env["PROOF_API_BASE"]
    if "PORT" in env:
        server["port"] = env["PORT"]

    try:
        algorithm = CryptoAlgorithm(signers.get("algorithm", CryptoAlgorithm.SECP256K1.value))
    except ValueError as e:
        raise ConfigurationError(f"Unknown signing algorithm {signers.get('algorithm')!r}") from e

    confirm_timeout = float(timeout.get("confirmation", 0) or 0)

    try:
        return RelayerConfig(
            rpc_url=_required(ledger, "rpc_url", "ledger"),
            signer_seeds=_seeds(signers.get("seeds")),
            treasury_seed=_required(treasury, "seed", "treasury"),
            threshold_drops=_threshold_drops(rebalance.get("threshold_xrp", C.DEFAULT_THRESHOLD_XRP)),
            venue_address=_required(venue, "address", "venue"),
            proof_base_url=_required(proof, "base_url", "proof"),
            algorithm=algorithm,
            rpc_timeout=float(ledger.get("rpc_timeout", C.RPC_TIMEOUT)),
            probe_retries=int(ledger.get("probe_retries", C.PROBE_RETRIES)),
            probe_delay=float(ledger.get("probe_delay", C.PROBE_DELAY)),
            rebalance_interval=float(rebalance.get("interval", 0)),
            call_value_drops=int(venue.get("call_value_drops", C.DEFAULT_CALL_VALUE_DROPS)),
            proof_timeout=float(proof.get("timeout", C.PROOF_TIMEOUT)),
            confirm_timeout=confirm_timeout if confirm_timeout > 0 else None,
            host=str(server.get("host", "0.0.0.0")),
            port=int(server.get("port", C.DEFAULT_PORT)),
        )
    except (TypeError, ValueError) as e:
        raise ConfigurationError(f"Malformed configuration in {path}: {e}") from e
