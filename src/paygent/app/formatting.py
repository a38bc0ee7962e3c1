"""Display helpers for micro-unit amounts, durations, and explorer links."""

from __future__ import annotations

MICRO_PER_STX = 1_000_000
SATS_PER_BTC = 100_000_000
MICRO_PER_USD = 1_000_000


def format_stx(micro_stx: int) -> str:
    return f"{micro_stx / MICRO_PER_STX:.6f} STX"


def format_sats(sats: int) -> str:
    btc = sats / SATS_PER_BTC
    if btc < 0.001:
        return f"{sats} sats"
    return f"{btc:.8f} sBTC"


def format_price(amount: int, asset: str) -> str:
    normalized = asset.upper()
    if normalized == "STX":
        return format_stx(amount)
    if normalized == "SBTC":
        return format_sats(amount)
    if normalized == "USDCX":
        return f"${amount / MICRO_PER_USD:.4f}"
    return f"{amount} {asset}"


def format_duration(ms: float) -> str:
    if ms < 1000:
        return f"{int(ms)}ms"
    if ms < 60_000:
        return f"{ms / 1000:.1f}s"
    return f"{ms / 60_000:.1f}m"


def explorer_url(tx_id: str, network: str) -> str:
    chain = "" if network == "mainnet" else "?chain=testnet"
    return f"https://explorer.hiro.so/txid/{tx_id}{chain}"
