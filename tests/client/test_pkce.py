import base64
import hashlib

import pytest
from pydantic import ValidationError

from flightsql_oauth.client.pkce import (
    UNRESERVED_CHARACTERS,
    PKCEParameters,
    compute_code_challenge,
    generate_state,
)


def test_batch_of_pairs_is_well_formed_and_unique():
    allowed = set(UNRESERVED_CHARACTERS)
    verifiers = set()

    for i in range(10_000):
        length = 43 + i % 86
        pkce = PKCEParameters.generate(length)

        assert 43 <= len(pkce.code_verifier) <= 128
        assert len(pkce.code_verifier) == length
        assert set(pkce.code_verifier) <= allowed
        expected = base64.urlsafe_b64encode(hashlib.sha256(pkce.code_verifier.encode()).digest()).rstrip(b"=")
        assert pkce.code_challenge == expected.decode()
        verifiers.add(pkce.code_verifier)

    assert len(verifiers) == 10_000


def test_default_verifier_and_challenge_lengths():
    pkce = PKCEParameters.generate()
    assert len(pkce.code_verifier) == 64
    assert len(pkce.code_challenge) == 43
    assert pkce.code_challenge_method == "S256"
    assert "=" not in pkce.code_challenge


@pytest.mark.parametrize("length", [0, 42, 129, 1000])
def test_out_of_range_length_rejected(length: int):
    with pytest.raises(ValueError, match="between 43 and 128"):
        PKCEParameters.generate(length)


def test_rfc7636_appendix_b_vector():
    verifier = "dBjftJeZ4CVP-mB92K27uhbUJU1p1r_wW1gFWFOEjXk"
    assert compute_code_challenge(verifier) == "E9Melhoa2OwvFrEMTJguCHaoeK1t8URWbuGJSstw-cM"


def test_model_rejects_short_verifier():
    with pytest.raises(ValidationError):
        PKCEParameters(code_verifier="short", code_challenge="x" * 43)


def test_state_values_differ():
    assert generate_state() != generate_state()
    assert len(generate_state()) >= 43
