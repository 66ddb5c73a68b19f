import pytest

from utils.chain_registry import detect_chain, profile_for_chain


@pytest.mark.parametrize(
    "filename,chain,feed_id",
    [
        ("ton_transactions_EQBl3gg6AAdjgj_20240101_120000.csv", "ton", "the-open-network"),
        ("opbnb_wallet.csv", "opbnb", "opbnb"),
        ("Scroll_export.csv", "scroll", "scroll"),
        ("bsc_wallet.csv", "bsc", "binancecoin"),
        ("solana_wallet.csv", "sol", "solana"),
        ("base_wallet.csv", "base", "base"),
        ("arbitrum_one.csv", "arb", "arbitrum"),
        ("ETH_mainnet.csv", "eth", "ethereum"),
        ("optimism_wallet.csv", "op", "optimism"),
        ("linea_wallet.csv", "lin", "linea"),
        ("zksync_era.csv", "zksync", "zksync"),
    ],
)
def test_detect_chain_maps_filename_to_profile(filename, chain, feed_id):
    profile = detect_chain(filename, currency="cad")

    assert profile is not None
    assert profile.name == chain
    assert profile.feed_id == feed_id
    assert profile.file_prefix == f"historical_fmv_{chain}_cad"


def test_detect_chain_checks_rules_in_order():
    # opbnb는 op보다, scroll은 sol보다 먼저 매칭돼야 한다.
    assert detect_chain("opbnb_op_mix.csv").name == "opbnb"
    assert detect_chain("scroll_sol.csv").name == "scroll"


def test_detect_chain_returns_none_for_unknown_file():
    assert detect_chain("wallet_export.csv") is None


def test_profile_for_chain_uses_currency_and_rejects_unknown():
    profile = profile_for_chain("TON", currency="usd")
    assert profile.feed_id == "the-open-network"
    assert profile.file_prefix == "historical_fmv_ton_usd"

    with pytest.raises(ValueError):
        profile_for_chain("dogechain")
