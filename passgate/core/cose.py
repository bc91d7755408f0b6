"""
COSE public key handling for assertion signatures.

Keys are stored exactly as the authenticator produced them (CBOR-encoded
COSE_Key maps) and only turned into `cryptography` key objects at
verification time.
"""
from typing import Any, Dict

import cbor2
from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import ec, rsa, padding, ed25519

from passgate.core.exceptions import SignatureInvalid, MalformedClientData

# COSE key parameters (RFC 9052 / 9053)
KTY, ALG = 1, 3
KTY_OKP, KTY_EC2, KTY_RSA = 1, 2, 3

ALG_ES256, ALG_ES384, ALG_ES512 = -7, -35, -36
ALG_EDDSA = -8
ALG_PS256, ALG_PS384, ALG_PS512 = -37, -38, -39
ALG_RS256, ALG_RS384, ALG_RS512 = -257, -258, -259

# Order is the preference order advertised in pubKeyCredParams.
SUPPORTED_ALGORITHMS = [
    ALG_ES256, ALG_EDDSA, ALG_ES384, ALG_ES512,
    ALG_RS256, ALG_PS256, ALG_RS384, ALG_RS512, ALG_PS384, ALG_PS512,
]

_EC_CURVES = {1: ec.SECP256R1(), 2: ec.SECP384R1(), 3: ec.SECP521R1()}
_EC_HASHES = {ALG_ES256: hashes.SHA256(), ALG_ES384: hashes.SHA384(), ALG_ES512: hashes.SHA512()}
_RSA_PKCS1_HASHES = {ALG_RS256: hashes.SHA256(), ALG_RS384: hashes.SHA384(), ALG_RS512: hashes.SHA512()}
_RSA_PSS_HASHES = {ALG_PS256: hashes.SHA256(), ALG_PS384: hashes.SHA384(), ALG_PS512: hashes.SHA512()}


def pub_key_cred_params():
    return [{"type": "public-key", "alg": alg} for alg in SUPPORTED_ALGORITHMS]


def load_cose_key(public_key: bytes) -> Dict[int, Any]:
    try:
        cose_key = cbor2.loads(public_key)
    except (cbor2.CBORDecodeError, ValueError, TypeError) as e:
        raise MalformedClientData(f"Credential public key is not valid CBOR: {e}")
    if not isinstance(cose_key, dict) or KTY not in cose_key:
        raise MalformedClientData("Credential public key is not a COSE_Key map.")
    return cose_key


def validate_cose_key(cose_key: Dict[int, Any]):
    """Rejects keys at registration time that could never verify an assertion."""
    key_type, alg = cose_key.get(KTY), cose_key.get(ALG)
    if alg is not None and alg not in SUPPORTED_ALGORITHMS:
        raise MalformedClientData(f"Unsupported COSE algorithm: {alg}")
    if key_type == KTY_OKP:
        if cose_key.get(-1) != 6 or not isinstance(cose_key.get(-2), bytes):
            raise MalformedClientData("Only Ed25519 OKP keys are supported.")
    elif key_type == KTY_EC2:
        if cose_key.get(-1) not in _EC_CURVES or not isinstance(cose_key.get(-2), bytes) \
                or not isinstance(cose_key.get(-3), bytes):
            raise MalformedClientData("Invalid EC2 COSE key.")
    elif key_type == KTY_RSA:
        if not isinstance(cose_key.get(-1), bytes) or not isinstance(cose_key.get(-2), bytes):
            raise MalformedClientData("Invalid RSA COSE key.")
    else:
        raise MalformedClientData(f"Unsupported COSE key type: {key_type}")


def verify_signature(public_key: bytes, signature: bytes, signed_data: bytes):
    """
    Verifies `signature` over `signed_data` with a stored COSE public key.
    Raises SignatureInvalid on any mismatch or unusable key.
    """
    cose_key = load_cose_key(public_key)
    key_type, alg = cose_key.get(KTY), cose_key.get(ALG)
    try:
        if key_type == KTY_OKP:
            if alg not in (None, ALG_EDDSA):
                raise SignatureInvalid(f"Unsupported OKP algorithm: {alg}")
            key = ed25519.Ed25519PublicKey.from_public_bytes(cose_key.get(-2))
            key.verify(signature, signed_data)

        elif key_type == KTY_EC2:
            crv, x, y = cose_key.get(-1), cose_key.get(-2), cose_key.get(-3)
            curve, hash_alg = _EC_CURVES.get(crv), _EC_HASHES.get(alg)
            if not curve or not hash_alg:
                raise SignatureInvalid(f"Unsupported EC curve/alg: {crv}/{alg}")
            key = ec.EllipticCurvePublicNumbers(int.from_bytes(x, 'big'), int.from_bytes(y, 'big'),
                                                curve).public_key()
            key.verify(signature, signed_data, ec.ECDSA(hash_alg))

        elif key_type == KTY_RSA:
            n, e = cose_key.get(-1), cose_key.get(-2)
            key = rsa.RSAPublicNumbers(int.from_bytes(e, 'big'), int.from_bytes(n, 'big')).public_key()
            if alg in _RSA_PKCS1_HASHES:
                key.verify(signature, signed_data, padding.PKCS1v15(), _RSA_PKCS1_HASHES[alg])
            elif alg in _RSA_PSS_HASHES:
                hash_alg = _RSA_PSS_HASHES[alg]
                key.verify(
                    signature, signed_data,
                    padding.PSS(mgf=padding.MGF1(hash_alg), salt_length=hash_alg.digest_size),
                    hash_alg
                )
            else:
                raise SignatureInvalid(f"Unsupported RSA algorithm: {alg}")
        else:
            raise SignatureInvalid(f"Unsupported key type: {key_type}")
    except InvalidSignature:
        raise SignatureInvalid("Assertion signature does not verify with the stored public key.")
    except (ValueError, TypeError) as e:
        raise SignatureInvalid(f"Stored public key is unusable: {e}")
