import pytest

from museum_booking.idcard import check_digit, is_valid_id_number, mask_id_number

from conftest import OTHER_VALID_ID, VALID_ID


@pytest.mark.parametrize("value", [VALID_ID, VALID_ID.lower(), OTHER_VALID_ID])
def test_valid_numbers(value):
    assert is_valid_id_number(value)


def test_mutated_check_digit_is_rejected():
    assert not is_valid_id_number(VALID_ID[:17] + "1")
    assert not is_valid_id_number(OTHER_VALID_ID[:17] + "8")


@pytest.mark.parametrize(
    "value",
    [
        VALID_ID[:17],
        VALID_ID + "0",
        "",
        None,
        "1101051949123100AX",
        "１１０１０５１９４９１２３１００２Ｘ",
    ],
)
def test_malformed_numbers(value):
    assert not is_valid_id_number(value)


def test_check_digit():
    assert check_digit(VALID_ID[:17]) == "X"
    assert check_digit(OTHER_VALID_ID[:17]) == "7"
    with pytest.raises(ValueError):
        check_digit("123")


def test_mask_keeps_prefix_and_suffix():
    assert mask_id_number(VALID_ID) == "110***********002X"
    assert mask_id_number(None) == "-"
