"""Trusted-dealer helpers for tests, migration and local development.

Nothing here runs in a production signing path: each helper sees every
party's secret at once.
"""

from __future__ import annotations

from tecdsa_engine.core.keygen import KeygenOutput
from tecdsa_engine.core.rounds import PARTICIPANTS
from tecdsa_engine.core.triples import GeneratedTriple, TriplePub, TripleShare
from tecdsa_engine.utils.crypto import Polynomial, combine_shares, evaluation_point
from tecdsa_engine.utils.curve import ORDER, base_mul, points_equal, random_scalar


def keygen_centralized(threshold: int = 2, secret: int | None = None) -> dict[int, KeygenOutput]:
    """Split one private key into both parties' keygen outputs."""
    if not 2 <= threshold <= len(PARTICIPANTS):
        raise ValueError(f"threshold must be 2..{len(PARTICIPANTS)}, got {threshold}")
    poly = Polynomial.random(threshold - 1, constant=secret if secret is not None else random_scalar())
    public_key = base_mul(poly.constant)
    outputs = {
        p: KeygenOutput(
            private_share=poly.evaluate(evaluation_point(p)),
            public_key=public_key,
            participant=p,
            threshold=threshold,
        )
        for p in PARTICIPANTS
    }
    poly.erase()
    return outputs


def deal_triple(index: int = 0, threshold: int = 2) -> dict[int, GeneratedTriple]:
    """One Beaver triple shared to both participants."""
    a, b = random_scalar(), random_scalar()
    c = a * b % ORDER
    polys = [Polynomial.random(threshold - 1, constant=v) for v in (a, b, c)]
    pub = TriplePub(
        big_a=base_mul(a),
        big_b=base_mul(b),
        big_c=base_mul(c),
        participants=tuple(PARTICIPANTS),
        threshold=threshold,
    )
    out = {}
    for p in PARTICIPANTS:
        x = evaluation_point(p)
        share = TripleShare(*(poly.evaluate(x) for poly in polys))
        out[p] = GeneratedTriple(index, pub, share)
    return out


def verify_triple(pub: TriplePub, shares: dict[int, TripleShare]) -> bool:
    """Reconstruct a triple and check a·b = c against its public points."""
    a = combine_shares({p: s.a for p, s in shares.items()})
    b = combine_shares({p: s.b for p, s in shares.items()})
    c = combine_shares({p: s.c for p, s in shares.items()})
    return (
        a * b % ORDER == c
        and points_equal(base_mul(a), pub.big_a)
        and points_equal(base_mul(b), pub.big_b)
        and points_equal(base_mul(c), pub.big_c)
    )
