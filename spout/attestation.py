"""
Compliance attestation checks against the Solana Attestation Service (SAS).

An attestation is a SAS account at PDA ``["attestation", credential, schema,
requester]``. Its ``data`` blob is borsh-encoded according to the schema
account's ``layout`` (one type code per field) and ``field_names``. A requester
is verified when the attestation has not expired and the compliance field
holds the expected value.

Absent accounts are a normal negative answer. Failed fetches and undecodable
accounts raise ``VerificationError`` so callers never mistake an outage for a
"no".
"""

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple

import construct
from borsh_construct import (
    Bool, Bytes, CStruct, I8, I16, I32, I64, I128, String, U8, U16, U32, U64, U128, Vec,
)
from construct import ConstructError
from solders.pubkey import Pubkey

from spout.addresses import derive_attestation_address
from spout.config import DeploymentConfig
from spout.errors import TransportError, VerificationError
from spout.ledger import AccountSnapshot, Ledger

logger = logging.getLogger(__name__)

PublicKey = construct.Bytes(32)

SchemaLayout = CStruct(
    "discriminator" / U8,
    "credential" / PublicKey,
    "name" / Bytes,
    "description" / Bytes,
    "layout" / Bytes,
    "field_names" / Bytes,
    "is_paused" / Bool,
    "version" / U8,
)

AttestationLayout = CStruct(
    "discriminator" / U8,
    "nonce" / PublicKey,
    "credential" / PublicKey,
    "schema" / PublicKey,
    "data" / Bytes,
    "signer" / PublicKey,
    "expiry" / I64,
    "token_account" / PublicKey,
)

FieldNamesLayout = Vec(String)

# SAS schema layout type codes
FIELD_TYPES = {
    0: U8,
    1: U16,
    2: U32,
    3: U64,
    4: U128,
    5: I8,
    6: I16,
    7: I32,
    8: I64,
    9: I128,
    10: Bool,
    11: U32,    # char, stored as a u32 code point
    12: String,
    13: Bytes,
}
CHAR_TYPE = 11


@dataclass(frozen=True)
class SchemaRecord:
    address: Pubkey
    credential: Pubkey
    name: str
    layout: Tuple[int, ...]
    field_names: Tuple[str, ...]
    is_paused: bool
    version: int


@dataclass(frozen=True)
class AttestationRecord:
    """Decoded attestation. Re-fetched on every check, never cached."""
    address: Pubkey
    nonce: Pubkey
    credential: Pubkey
    schema: Pubkey
    signer: Pubkey
    expiry: int
    token_account: Pubkey
    fields: Dict[str, Any] = field(default_factory=dict)

    def compliance_flag(self, name: str) -> Any:
        return self.fields.get(name)


@dataclass(frozen=True)
class VerificationResult:
    verified: bool
    reason: str
    record: Optional[AttestationRecord] = None

    def __bool__(self) -> bool:
        return self.verified


def decode_schema(snapshot: AccountSnapshot) -> SchemaRecord:
    try:
        parsed = SchemaLayout.parse(snapshot.data)
        names = FieldNamesLayout.parse(bytes(parsed.field_names))
    except ConstructError as e:
        raise VerificationError(f"undecodable schema account {snapshot.address}: {e}") from e
    layout = tuple(bytes(parsed.layout))
    if len(layout) != len(names):
        raise VerificationError(
            f"schema {snapshot.address} has {len(layout)} layout entries but {len(names)} field names"
        )
    return SchemaRecord(
        address=snapshot.address,
        credential=Pubkey(bytes(parsed.credential)),
        name=bytes(parsed.name).decode("utf-8", errors="replace"),
        layout=layout,
        field_names=tuple(names),
        is_paused=bool(parsed.is_paused),
        version=parsed.version,
    )


def decode_attestation_data(schema: SchemaRecord, data: bytes) -> Dict[str, Any]:
    """Decode an attestation's data blob field by field per ``schema``."""
    subcons: List[construct.Subconstruct] = []
    for name, type_code in zip(schema.field_names, schema.layout):
        field_type = FIELD_TYPES.get(type_code)
        if field_type is None:
            raise VerificationError(f"unsupported schema type code {type_code} for field {name!r}")
        subcons.append(name / field_type)
    try:
        parsed = CStruct(*subcons).parse(data)
    except ConstructError as e:
        raise VerificationError(f"attestation data does not match schema {schema.name!r}: {e}") from e

    fields: Dict[str, Any] = {}
    for name, type_code in zip(schema.field_names, schema.layout):
        value = parsed[name]
        if type_code == CHAR_TYPE:
            value = chr(value)
        elif isinstance(value, (bytes, bytearray)):
            value = bytes(value)
        fields[name] = value
    return fields


def decode_attestation(snapshot: AccountSnapshot, schema: SchemaRecord) -> AttestationRecord:
    try:
        parsed = AttestationLayout.parse(snapshot.data)
    except ConstructError as e:
        raise VerificationError(f"undecodable attestation account {snapshot.address}: {e}") from e
    return AttestationRecord(
        address=snapshot.address,
        nonce=Pubkey(bytes(parsed.nonce)),
        credential=Pubkey(bytes(parsed.credential)),
        schema=Pubkey(bytes(parsed.schema)),
        signer=Pubkey(bytes(parsed.signer)),
        expiry=parsed.expiry,
        token_account=Pubkey(bytes(parsed.token_account)),
        fields=decode_attestation_data(schema, bytes(parsed.data)),
    )


class AttestationVerifier:
    """Answers "does this requester hold a valid compliance attestation?"."""

    def __init__(
        self,
        ledger: Ledger,
        config: DeploymentConfig,
        now: Callable[[], float] = time.time,
    ):
        self.ledger = ledger
        self.config = config
        self._now = now

    async def verify(
        self,
        credential: Pubkey,
        schema: Pubkey,
        requester: Pubkey,
    ) -> VerificationResult:
        address = derive_attestation_address(credential, schema, requester, self.config.sas_program)
        try:
            schema_snap, attestation_snap = await self.ledger.get_accounts([schema, address])
        except TransportError as e:
            raise VerificationError(f"could not fetch attestation accounts: {e}") from e

        if schema_snap is None:
            return self._negative(requester, f"schema {schema} not found")
        if attestation_snap is None:
            return self._negative(requester, "no attestation for requester")

        for snap in (schema_snap, attestation_snap):
            if snap.owner != self.config.sas_program:
                raise VerificationError(f"{snap.address} is not owned by the attestation program")

        schema_record = decode_schema(schema_snap)
        record = decode_attestation(attestation_snap, schema_record)

        if schema_record.is_paused:
            return self._negative(requester, "schema is paused", record)
        if record.credential != credential or record.schema != schema:
            return self._negative(requester, "attestation issued under a different credential or schema", record)

        flag_name = self.config.compliance_field
        if flag_name not in record.fields:
            raise VerificationError(f"schema {schema_record.name!r} has no field {flag_name!r}")

        now = int(self._now())
        if now >= record.expiry:
            return self._negative(requester, f"attestation expired at {record.expiry}", record)
        flag = record.fields[flag_name]
        if flag != self.config.compliance_expected:
            return self._negative(requester, f"{flag_name} is {flag!r}", record)

        logger.info(f"Attestation valid for {str(requester)[:8]}... until {record.expiry}")
        return VerificationResult(True, "attestation valid", record)

    async def verify_requester(self, requester: Pubkey) -> VerificationResult:
        """``verify`` against the deployment's configured credential and schema."""
        return await self.verify(self.config.credential, self.config.schema, requester)

    @staticmethod
    def _negative(requester: Pubkey, reason: str, record: Optional[AttestationRecord] = None) -> VerificationResult:
        logger.info(f"Attestation not valid for {str(requester)[:8]}...: {reason}")
        return VerificationResult(False, reason, record)
