from decimal import Decimal

import pytest

import inscriber.constants as C
from inscriber.errors import ValidationError
from inscriber.models import GasPolicy, RunConfig, short_address


def test_many_to_one_requires_target() -> None:
    cfg = RunConfig.from_text(payload="hello", mode=C.TransferMode.MANY_TO_ONE)

    with pytest.raises(ValidationError, match="target address"):
        cfg.validate()


def test_many_to_one_rejects_bad_target() -> None:
    cfg = RunConfig.from_text(payload="hello", mode=C.TransferMode.MANY_TO_ONE, target_address="0x1234")

    with pytest.raises(ValidationError, match="Invalid target"):
        cfg.validate()


def test_target_is_checksummed() -> None:
    cfg = RunConfig.from_text(
        payload="hello",
        mode=C.TransferMode.MANY_TO_ONE,
        target_address="0x5ce9454909639d2d17a3f753ce7d93fa0b9ab12e",
    ).validate()

    assert cfg.target_address == "0x5ce9454909639D2D17A3F753ce7d93fa0b9aB12E"


def test_empty_payload_is_rejected() -> None:
    with pytest.raises(ValidationError, match="payload"):
        RunConfig.from_text(payload="", mode=C.TransferMode.SELF_TRANSFER).validate()


def test_payload_is_utf8() -> None:
    cfg = RunConfig.from_text(payload="铭文", mode=C.TransferMode.SELF_TRANSFER)

    assert cfg.payload == "铭文".encode("utf-8")


@pytest.mark.parametrize(
    "interval, fast, expected",
    [(0, False, 0), (0, True, 100), (50, True, 100), (250, True, 250), (250, False, 250)],
)
def test_effective_delay(interval, fast, expected) -> None:
    cfg = RunConfig(mode=C.TransferMode.SELF_TRANSFER, payload=b"x", interval_ms=interval, fast_mode=fast)

    assert cfg.effective_delay_ms == expected


def test_gas_policy_converts_gwei_exactly() -> None:
    policy = GasPolicy.parse("tip", "1.5")

    assert policy.mode == C.GasMode.TIP
    assert policy.amount_gwei == Decimal("1.5")
    assert policy.amount_wei == 1_500_000_000


def test_gas_policy_rejects_negative() -> None:
    with pytest.raises(ValidationError):
        GasPolicy.parse(C.GasMode.TOTAL, -1)


def test_short_address() -> None:
    assert short_address("0x5ce9454909639D2D17A3F753ce7d93fa0b9aB12E") == "0x5ce9...B12E"


def test_gas_policy_rejects_unknown_mode() -> None:
    with pytest.raises(ValidationError, match="gas mode"):
        GasPolicy.parse("base", 1)
