from conftest import ADDR_A, KEY_A, KEY_B

from inscriber.accounts import AccountStore


def test_bare_and_prefixed_keys_give_same_checksummed_address() -> None:
    store = AccountStore.from_lines([KEY_A, f"0x{KEY_A}", KEY_A.upper()])

    assert [a.address for a in store] == [ADDR_A, ADDR_A, ADDR_A]


def test_malformed_lines_are_dropped_and_order_kept() -> None:
    text = "\n".join([
        "not a key",
        KEY_B,
        "",
        "0x1234",
        f"  {KEY_A}  ",
        "0x" + "zz" * 32,
        KEY_A + "00",
    ])

    store = AccountStore.from_text(text)

    assert len(store) == 2
    assert store.addresses()[1] == ADDR_A
    assert store.accounts()[0].address != ADDR_A


def test_out_of_range_key_is_dropped() -> None:
    store = AccountStore.from_lines(["00" * 32, KEY_A])

    assert store.addresses() == [ADDR_A]


def test_empty_input_gives_empty_store() -> None:
    assert len(AccountStore.from_text("")) == 0


def test_key_never_appears_in_repr() -> None:
    account = AccountStore.from_lines([KEY_A]).accounts()[0]

    assert KEY_A not in repr(account).lower()
    assert ADDR_A in repr(account)
