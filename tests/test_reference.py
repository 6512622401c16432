from solders.pubkey import Pubkey  # type: ignore

from solpay.crypto.reference import generate_reference, is_valid_reference


def test_references_are_unique_public_keys():
    references = {generate_reference() for _ in range(10_000)}

    assert len(references) == 10_000
    sample = next(iter(references))
    assert len(bytes(Pubkey.from_string(sample))) == 32


def test_is_valid_reference():
    assert is_valid_reference(generate_reference())
    assert not is_valid_reference("not-a-key")
    assert not is_valid_reference("")
    assert not is_valid_reference("0OIl" * 11)
