"""Deterministic deployment address derivation.

The deployment address of a contract is a function of the factory address and the salt only.
The contract bytecode does not contribute to the address.

This is achieved with a two-hop deployment:

1. The factory uses ``CREATE2`` to deploy a tiny relay contract, :py:data:`PROXY_BYTECODE`.
   The relay address is derived from the factory address, the salt and the hash
   of the fixed relay init code.

2. The relay, being a fresh contract account with nonce ``1``, uses ``CREATE`` to deploy the actual
   contract from the creation code it receives as calldata. ``CREATE`` addresses only depend
   on the creator address and its nonce.

Example:

.. code-block:: python

    from eth_create3.address import derive_deployment_address, format_bytes32_string

    salt = format_bytes32_string("my-token-v1")
    address = derive_deployment_address("0xbb681d77506df5CA21D2214ab3923b4C056aa3e2", salt)
    print(f"The token will be deployed at {address} on every chain")

See also

- `EIP-1014: Skinny CREATE2 <https://eips.ethereum.org/EIPS/eip-1014>`__
"""

import re
import secrets
from typing import Any, Sequence

import rlp
from eth_abi import encode
from eth_typing import ChecksumAddress, HexAddress
from eth_utils import keccak, to_checksum_address
from hexbytes import HexBytes


#: Init code of the relay contract the factory deploys with ``CREATE2``.
#:
#: Returns :py:data:`PROXY_RUNTIME_BYTECODE` as the runtime code.
PROXY_BYTECODE = HexBytes("0x67363d3d37363d34f03d5260086018f3")

#: Runtime code of the relay.
#:
#: ``CALLDATACOPY`` the calldata to memory and ``CREATE`` a contract from it,
#: forwarding ``CALLVALUE``.
PROXY_RUNTIME_BYTECODE = HexBytes("0x363d3d37363d34f0")

#: keccak256 of :py:data:`PROXY_BYTECODE`
PROXY_BYTECODE_HASH = HexBytes(keccak(PROXY_BYTECODE))

#: A salt string that is a full bytes32 hex value
_HEX_SALT_PATTERN = re.compile(r"0x[0-9a-fA-F]{64}")


def _address_to_bytes(address: HexAddress | str | bytes) -> bytes:
    raw = HexBytes(address)
    if len(raw) != 20:
        raise ValueError(f"Address must be 20 bytes, got {len(raw)}: {address}")
    return bytes(raw)


def format_bytes32_string(text: str) -> bytes:
    """Encode a short human readable text as a ``bytes32`` value.

    Compatible with ethers.js ``formatBytes32String()``: UTF-8 bytes,
    right padded with zeroes. The last byte is always the null terminator.

    :param text:
        Text to encode, at most 31 bytes as UTF-8

    :raise ValueError:
        If the text is too long
    """
    assert type(text) == str, f"Expected str, got {type(text)}"
    encoded = text.encode("utf-8")
    if len(encoded) > 31:
        raise ValueError(f"bytes32 string must be less than 32 bytes: {text}")
    return encoded.ljust(32, b"\x00")


def normalise_salt(salt: bytes | HexBytes | str) -> bytes:
    """Convert different salt inputs to 32 raw bytes.

    - Raw bytes are used as is

    - ``0x`` prefixed 64 digit hex strings are decoded

    - Any other string is considered a human readable label
      and encoded with :py:func:`format_bytes32_string`

    :raise ValueError:
        If the salt is not 32 bytes
    """
    if isinstance(salt, str):
        if _HEX_SALT_PATTERN.fullmatch(salt):
            raw = bytes(HexBytes(salt))
        else:
            raw = format_bytes32_string(salt)
    elif isinstance(salt, (bytes, bytearray)):
        raw = bytes(salt)
    else:
        raise TypeError(f"Unsupported salt type: {type(salt)}")

    if len(raw) != 32:
        raise ValueError(f"Salt must be 32 bytes, got {len(raw)}")

    return raw


def generate_random_salt() -> bytes:
    """Create a fresh random salt.

    Used for repeated test deployments where we deliberately
    do not want the same address twice.
    """
    return secrets.token_bytes(32)


def derive_create2_address(
    sender: HexAddress | str | bytes,
    salt: bytes | str,
    init_code: bytes | str,
) -> ChecksumAddress:
    """Compute a ``CREATE2`` contract address.

    ``keccak256(0xff ++ sender ++ salt ++ keccak256(init_code))[12:]``

    :param sender:
        The contract that executes ``CREATE2``

    :param salt:
        32 bytes salt, see :py:func:`normalise_salt`

    :param init_code:
        Contract creation code
    """
    preimage = b"\xff" + _address_to_bytes(sender) + normalise_salt(salt) + keccak(HexBytes(init_code))
    return to_checksum_address(keccak(preimage)[12:])


def derive_create_address(sender: HexAddress | str | bytes, nonce: int) -> ChecksumAddress:
    """Compute a ``CREATE`` contract address.

    ``keccak256(rlp([sender, nonce]))[12:]``

    :param sender:
        Account deploying the contract

    :param nonce:
        Account nonce at the time of the deployment
    """
    assert type(nonce) == int and nonce >= 0, f"Bad nonce: {nonce}"
    encoded = rlp.encode([_address_to_bytes(sender), nonce])
    return to_checksum_address(keccak(encoded)[12:])


def derive_proxy_address(factory_address: HexAddress | str | bytes, salt: bytes | str) -> ChecksumAddress:
    """Address of the single-use relay deployed for a salt."""
    return derive_create2_address(factory_address, salt, PROXY_BYTECODE)


def derive_deployment_address(factory_address: HexAddress | str | bytes, salt: bytes | str) -> ChecksumAddress:
    """Predict the final contract address for a factory and a salt.

    - Pure function, no network access

    - Does not depend on the creation code

    - Same on every chain where the factory lives at the same address

    The second hop is the RLP encoding of ``[proxy, 1]`` spelled out:
    ``0xd6`` list prefix, ``0x94`` 20 byte string prefix, the proxy address and nonce ``0x01``.

    :param factory_address:
        Deterministic factory contract address

    :param salt:
        32 bytes salt, see :py:func:`normalise_salt`

    :return:
        Checksummed contract address
    """
    proxy = _address_to_bytes(derive_proxy_address(factory_address, salt))
    return to_checksum_address(keccak(b"\xd6\x94" + proxy + b"\x01")[12:])


def get_creation_code(
    bytecode: bytes | str,
    constructor_arg_types: Sequence[str] | None = None,
    constructor_args: Sequence[Any] | None = None,
) -> HexBytes:
    """Build creation code from compiled bytecode and constructor arguments.

    Example:

    .. code-block:: python

        creation_code = get_creation_code(
            artifact["bytecode"],
            ["bool", "string", "string"],
            [False, "My token", "MYT"],
        )

    :param bytecode:
        Contract init bytecode as output by the compiler

    :param constructor_arg_types:
        ABI types of the constructor arguments

    :param constructor_args:
        Constructor argument values

    :return:
        Init bytecode followed by ABI encoded constructor arguments
    """
    constructor_arg_types = list(constructor_arg_types or [])
    constructor_args = list(constructor_args or [])
    assert len(constructor_arg_types) == len(constructor_args), f"Constructor argument types {constructor_arg_types} do not match values {constructor_args}"

    creation_code = HexBytes(bytecode)
    if constructor_arg_types:
        creation_code = HexBytes(creation_code + encode(constructor_arg_types, constructor_args))
    return creation_code
