import hashlib

import pytest

from latchkey.service.tokens import TokenGenerator


def test_generated_token_has_256_bits_and_matching_digest():
    generated = TokenGenerator().generate()

    assert len(generated.token) == 64
    int(generated.token, 16)
    assert generated.digest == hashlib.sha256(generated.token.encode()).hexdigest()
    assert generated.digest != generated.token


def test_tokens_are_unique():
    generator = TokenGenerator()
    tokens = {generator.generate().token for _ in range(50)}

    assert len(tokens) == 50


def test_digest_is_deterministic():
    assert TokenGenerator.digest("abc") == TokenGenerator.digest("abc")
    assert TokenGenerator.digest("abc") != TokenGenerator.digest("abd")


def test_repr_hides_token():
    generated = TokenGenerator().generate()

    assert generated.token not in repr(generated)


def test_rejects_short_tokens():
    with pytest.raises(ValueError):
        TokenGenerator(nbytes=16)


def test_longer_tokens_allowed():
    assert len(TokenGenerator(nbytes=48).generate().token) == 96
