import pytest

import accession
from errors import CapacityError, DuplicateError, FormatError, ValidationError


def test_next_number_follows_highest_issued():
    assert accession.next_accession_number({"0000041"}, 41) == "0000042"


def test_next_number_skips_taken_numbers():
    existing = {"0000041", "0000042", "0000043"}
    assert accession.next_accession_number(existing, 41) == "0000044"


def test_next_number_starts_at_one_on_empty_library():
    assert accession.next_accession_number(set(), 0) == "0000001"


def test_format_is_seven_digits():
    assert accession.format_accession_number(7) == "0000007"
    assert accession.format_accession_number(9_999_999) == "9999999"


def test_format_rejects_out_of_range():
    with pytest.raises(CapacityError):
        accession.format_accession_number(10_000_000)


@pytest.mark.parametrize("candidate, ok", [
    ("0000001", True),
    ("1234567", True),
    ("123456", False),
    ("12345678", False),
    ("12a4567", False),
    ("", False),
    (None, False),
])
def test_validate_format(candidate, ok):
    assert accession.validate_format(candidate) is ok


def test_batch_is_distinct_ascending_and_avoids_existing():
    existing = {"0000011", "0000013"}
    batch = accession.allocate_batch(4, existing, 10)
    assert batch == ["0000012", "0000014", "0000015", "0000016"]
    assert existing == {"0000011", "0000013"}


def test_chained_batches_never_collide():
    taken = set()
    highest = 0
    for size in (3, 5, 1, 7):
        batch = accession.allocate_batch(size, taken, highest)
        assert len(set(batch)) == size
        assert not taken & set(batch)
        assert all(accession.validate_format(n) for n in batch)
        taken |= set(batch)
        highest = int(batch[-1])
    assert len(taken) == 16


def test_batch_rejects_non_positive_count():
    with pytest.raises(ValidationError):
        accession.allocate_batch(0, set(), 0)


def test_batch_is_all_or_nothing_at_ceiling(monkeypatch):
    monkeypatch.setattr(accession, "ACCESSION_CEILING", 5)
    existing = {"0000001", "0000002", "0000003"}
    with pytest.raises(CapacityError):
        accession.allocate_batch(3, existing, 3)
    assert accession.allocate_batch(2, existing, 3) == ["0000004", "0000005"]


def test_allocation_wraps_to_unused_low_numbers():
    assert accession.next_accession_number({"9999999"}, 9_999_999) == "0000001"


def test_uniqueness_rejects_bad_format_and_duplicates():
    with pytest.raises(FormatError):
        accession.validate_uniqueness("12345", set())
    with pytest.raises(DuplicateError) as info:
        accession.validate_uniqueness("0000005", {"0000005"})
    assert info.value.field == "accession_no"


def test_uniqueness_ignores_own_number():
    accession.validate_uniqueness("0000005", {"0000005"}, excluding_self="0000005")
