from classes.settings import parse_redeem_codes


def test_parse_redeem_codes() -> None:
    assert parse_redeem_codes("Admin:100, promo:5") == {"admin": 100, "promo": 5}


def test_parse_redeem_codes_skips_bad_entries() -> None:
    assert parse_redeem_codes("admin:lots,nobonus,neg:-3,,ok:1") == {"ok": 1}
