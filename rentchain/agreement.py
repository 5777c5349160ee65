"""RentalAgreement contract codec.

The contract is a black box with a fixed surface:

    constructor(address renter, string propertyIPFSHash,
                uint256 rentAmount, uint256 depositAmount, uint256 rentalDuration)
    activateAgreement() payable
    terminateAgreement()
    landlord() renter() propertyIPFSHash() rentAmount()
    depositAmount() rentalDuration() isActive() isTerminated()

Everything here is pure encoding/decoding; no I/O except loading the
compiled artifact.
"""

import json

from eth_abi import decode as abi_decode
from eth_abi import encode as abi_encode
from eth_abi.exceptions import DecodingError
from eth_utils import keccak, to_checksum_address

CONSTRUCTOR_TYPES = ["address", "string", "uint256", "uint256", "uint256"]

ACTIVATE_SIGNATURE = "activateAgreement()"
TERMINATE_SIGNATURE = "terminateAgreement()"

# view field -> (accessor signature, ABI return type)
READ_ACCESSORS = {
    "landlord": ("landlord()", "address"),
    "renter": ("renter()", "address"),
    "content_hash": ("propertyIPFSHash()", "string"),
    "rent_amount": ("rentAmount()", "uint256"),
    "deposit_amount": ("depositAmount()", "uint256"),
    "duration_days": ("rentalDuration()", "uint256"),
    "is_active": ("isActive()", "bool"),
    "is_terminated": ("isTerminated()", "bool"),
}

# Error(string) selector used by Solidity require()/revert()
ERROR_SELECTOR = bytes.fromhex("08c379a0")

# Placeholder creation code accepted by SimLedger when no artifact is configured
SIM_BYTECODE = "0x6080604052"


def selector(signature: str) -> bytes:
    return keccak(text=signature)[:4]


def _strip_hex(value: str) -> str:
    return value[2:] if value.startswith("0x") else value


def encode_call(signature: str, arg_types: list[str] | None = None,
                args: list | None = None) -> str:
    """Calldata for a method call, 0x-prefixed."""
    data = selector(signature)
    if arg_types:
        data += abi_encode(arg_types, args or [])
    return "0x" + data.hex()


def encode_deploy(bytecode: str, renter: str, content_hash: str,
                  rent_amount: int, deposit_amount: int, duration_days: int) -> str:
    """Creation code followed by the ABI-encoded constructor arguments."""
    args = abi_encode(
        CONSTRUCTOR_TYPES,
        [to_checksum_address(renter), content_hash, rent_amount, deposit_amount, duration_days],
    )
    return "0x" + _strip_hex(bytecode) + args.hex()


def decode_deploy(data: str, bytecode: str) -> dict:
    """Inverse of encode_deploy. Raises ValueError if the creation code differs."""
    code = _strip_hex(bytecode).lower()
    payload = _strip_hex(data).lower()
    if not payload.startswith(code):
        raise ValueError("creation code does not match the RentalAgreement bytecode")
    renter, content_hash, rent, deposit, duration = abi_decode(
        CONSTRUCTOR_TYPES, bytes.fromhex(payload[len(code):])
    )
    return {
        "renter": to_checksum_address(renter),
        "content_hash": content_hash,
        "rent_amount": rent,
        "deposit_amount": deposit,
        "duration_days": duration,
    }


def decode_result(abi_type: str, result: str):
    """Decode a single eth_call return value."""
    (value,) = abi_decode([abi_type], bytes.fromhex(_strip_hex(result)))
    if abi_type == "address":
        return to_checksum_address(value)
    return value


def encode_result(abi_type: str, value) -> str:
    return "0x" + abi_encode([abi_type], [value]).hex()


def encode_revert(reason: str) -> str:
    return "0x" + (ERROR_SELECTOR + abi_encode(["string"], [reason])).hex()


def decode_revert(data: str | None) -> str:
    """Extract the Error(string) message from revert data, if any."""
    if not data:
        return ""
    raw = bytes.fromhex(_strip_hex(data))
    if raw[:4] != ERROR_SELECTOR:
        return "0x" + raw.hex() if raw else ""
    try:
        (reason,) = abi_decode(["string"], raw[4:])
    except DecodingError:
        return "0x" + raw.hex()
    return reason


def load_artifact(path: str) -> tuple[list, str]:
    """Load (abi, bytecode) from a Hardhat/Foundry style JSON artifact."""
    with open(path) as f:
        artifact = json.load(f)
    bytecode = artifact.get("bytecode", "")
    if isinstance(bytecode, dict):  # foundry: {"object": "0x..."}
        bytecode = bytecode.get("object", "")
    if not bytecode or _strip_hex(bytecode) == "":
        raise ValueError(f"Artifact {path} has no bytecode")
    return artifact.get("abi", []), bytecode
