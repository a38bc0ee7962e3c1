from __future__ import annotations

from paygent.app.formatting import explorer_url, format_duration, format_price, format_stx


def test_amount_formatting() -> None:
    assert format_stx(4000) == "0.004000 STX"
    assert format_price(1500, "STX") == "0.001500 STX"
    assert format_price(50_000, "sBTC") == "50000 sats"
    assert format_price(250_000_000, "sBTC") == "2.50000000 sBTC"
    assert format_price(1_500_000, "USDCx") == "$1.5000"


def test_duration_formatting() -> None:
    assert format_duration(250.7) == "250ms"
    assert format_duration(1500) == "1.5s"
    assert format_duration(90_000) == "1.5m"


def test_explorer_url_marks_testnet() -> None:
    assert explorer_url("0xabc", "testnet") == "https://explorer.hiro.so/txid/0xabc?chain=testnet"
    assert explorer_url("0xabc", "mainnet") == "https://explorer.hiro.so/txid/0xabc"
