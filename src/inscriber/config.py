import os
import tomllib
from pathlib import Path

from inscriber.errors import ValidationError

pkg_root = Path(__file__).parent
config_file = pkg_root / "config.toml"

cfg = tomllib.loads(config_file.read_text())

# Environment wins over config.toml
cfg["rpc"]["url"] = os.getenv("RPC_URL", cfg["rpc"].get("url", ""))
cfg["rpc"]["default_chain"] = os.getenv("CHAIN", cfg["rpc"].get("default_chain", "ethereum"))


def chain_settings(name: str | None = None) -> dict:
    """Settings for a configured chain, the default one if ``name`` is None."""
    key = name or cfg["rpc"]["default_chain"]
    try:
        return {"key": key, **cfg["chains"][key]}
    except KeyError:
        raise ValidationError(f"Unknown chain: {key}") from None


def rpc_url(chain: str | None = None, override: str | None = None) -> str:
    """An explicit override, else RPC_URL / config.toml, else the chain's public endpoint."""
    if override:
        return override
    if chain is None and cfg["rpc"]["url"]:
        return cfg["rpc"]["url"]
    return chain_settings(chain)["rpc"]
