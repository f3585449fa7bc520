#!/usr/bin/env python3
"""
PIX (Brazilian instant payment) BR Code Codec
Based on the BCB BR Code manual and the EMV QR Code Specification
for merchant-presented mode
"""

import argparse
import json
import re
import sys
from dataclasses import dataclass, field as dataclass_field
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from enum import Enum
from pathlib import Path
from types import MappingProxyType
from typing import Any, Dict, List, Optional, Union

# ---------- Errors ----------

class PixCodecError(ValueError):
    """Base class for every error raised by the codec"""


class InvalidInput(PixCodecError):
    """Missing or malformed arguments"""


class ChecksumMismatch(PixCodecError):
    """The CRC carried by a payload does not match its contents"""

    def __init__(self, expected: str, actual: str):
        super().__init__(f"Invalid CRC. Expected: {expected}, Got: {actual}")
        self.expected = expected
        self.actual = actual

# ---------- Data Model ----------

@dataclass
class ScalarField:
    id: str
    value: str
    description: Optional[str] = None
    length: Optional[str] = None    # Declared wire length, set by the decoder

    def value_length(self) -> int:
        return len(self.value or "")

    def to_dict(self) -> Dict[str, Any]:
        return _field_dict(self, self.value)


@dataclass
class CompositeField:
    id: str
    fields: List["Field"] = dataclass_field(default_factory=list)
    description: Optional[str] = None
    length: Optional[str] = None

    def value_length(self) -> int:
        # Every encodable child adds its own id and length digits
        return sum(4 + child.value_length() for child in self.fields if _is_encodable(child))

    def to_dict(self) -> Dict[str, Any]:
        return _field_dict(self, [child.to_dict() for child in self.fields])


Field = Union[ScalarField, CompositeField]


def _is_encodable(item: Field) -> bool:
    if isinstance(item, CompositeField):
        return bool(item.id)
    return bool(item.id) and item.value is not None


def _field_dict(item: Field, value: Any) -> Dict[str, Any]:
    data = {
        "id": item.id,
        "length": item.length if item.length is not None else str(item.value_length()).zfill(2),
        "value": value,
    }
    if item.description:
        data["description"] = item.description
    return data


def field_from_dict(data: Dict[str, Any]) -> Field:
    """
    Build a field from its plain dict form

    A list value means a composite field; anything else is a scalar.
    """
    value = data.get("value")
    if isinstance(value, (list, tuple)):
        return CompositeField(
            id=data.get("id"),
            fields=_fields_from_items(value),
            description=data.get("description"),
        )
    return ScalarField(id=data.get("id"), value=value, description=data.get("description"))


def _fields_from_items(items) -> List[Field]:
    fields = []
    for item in items:
        if isinstance(item, dict):
            item = field_from_dict(item)
        if not isinstance(item, (ScalarField, CompositeField)):
            raise InvalidInput(f"Unsupported field entry: {item!r}")
        fields.append(item)
    return fields


@dataclass
class PaymentDocument:
    """Ordered top-level field list of a payload"""
    fields: List[Field] = dataclass_field(default_factory=list)

    def get(self, field_id: str) -> Optional[Field]:
        return next((item for item in self.fields if item.id == field_id), None)

    def to_dict(self) -> Dict[str, Any]:
        return {"fields": [item.to_dict() for item in self.fields]}

    @staticmethod
    def from_dict(data: Dict[str, Any]) -> "PaymentDocument":
        # Older payment JSON keeps the list under "value"
        items = data.get("fields", data.get("value"))
        if not isinstance(items, (list, tuple)):
            raise InvalidInput("Invalid PIX data format. Expected object with a fields list.")
        return PaymentDocument(fields=_fields_from_items(items))


class PixKeyType(Enum):
    CPF = "CPF"
    CNPJ = "CNPJ"
    EMAIL = "EMAIL"
    PHONE = "PHONE"
    RANDOM = "RANDOM"  # EVP, random UUID key


@dataclass
class KeyValidation:
    is_valid: bool
    type: Optional[PixKeyType] = None
    error: Optional[str] = None

# ---------- Codec ----------

NON_DIGIT_RE = re.compile(r"[^0-9]")
CPF_RE = re.compile(r"[0-9]{11}")
CNPJ_RE = re.compile(r"[0-9]{14}")
EMAIL_RE = re.compile(r"[^\s@]+@[^\s@]+\.[^\s@]+")
PHONE_RE = re.compile(r"\+55[0-9]{10,11}")
RANDOM_KEY_RE = re.compile(
    r"[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}", re.IGNORECASE
)
LENGTH_RE = re.compile(r"[0-9]{2}")


class PixCodec:
    """
    Encodes and decodes PIX payloads (TLV fields closed by a CRC16)
    and builds the field tree of a static merchant-presented payment
    """

    TOP_LEVEL_TAG_NAMES = MappingProxyType({
        "00": "Payload Format Indicator",
        "26": "Merchant Account Information",
        "52": "Merchant Category Code (MCC)",
        "53": "Transaction Currency",
        "54": "Transaction Amount",
        "58": "Country Code",
        "59": "Merchant Name",
        "60": "Merchant City",
        "62": "Additional Data Field Template",
        "63": "CRC16 - result's 4 nibbles",
    })

    SUBTAG_NAMES = MappingProxyType({
        "26": MappingProxyType({"00": "GUI", "01": "Key"}),
        "62": MappingProxyType({"05": "Transaction ID", "50": "Payment system specific template"}),
    })

    # Only these tags carry nested TLV data when parsing
    COMPOSITE_TAGS = frozenset({"26", "62"})

    CRC_TAG = "63"
    CRC_PREFIX = "6304"
    CRC_POLYNOMIAL = 0x1021
    CRC_INIT_VALUE = 0xFFFF

    MAX_VALUE_LENGTH = 99

    PIX_GUI = "BR.GOV.BCB.PIX"
    BRCODE_GUI = "BR.GOV.BCB.BRCODE"
    BRCODE_VERSION = "1.0.0"

    def encode_tlv(self, tag: str, value: str) -> str:
        """
        Encode data in TLV (Tag-Length-Value) format

        Args:
            tag: 2-digit tag identifier
            value: The value to encode

        Returns:
            Encoded string in format: tag + length + value
        """
        if not isinstance(value, str):
            raise InvalidInput(f"Field {tag} value must be a string, got {type(value).__name__}")
        if len(value) > self.MAX_VALUE_LENGTH:
            raise InvalidInput(
                f"Field {tag} is {len(value)} characters long; "
                f"the maximum is {self.MAX_VALUE_LENGTH}"
            )
        length = str(len(value)).zfill(2)
        return f"{tag}{length}{value}"

    def encode_field(self, item: Field) -> str:
        """
        Encode one field, recursing into composite fields

        Children without an id or without a value are skipped.
        """
        if isinstance(item, CompositeField):
            nested = "".join(self.encode_field(child) for child in item.fields if _is_encodable(child))
            return self.encode_tlv(item.id, nested)
        return self.encode_tlv(item.id, item.value)

    def calculate_crc16(self, data: str) -> str:
        """
        Calculate CRC-16/CCITT-FALSE

        Args:
            data: Everything preceding the CRC value, "6304" included

        Returns:
            4-character hexadecimal CRC value (uppercase)
        """
        crc = self.CRC_INIT_VALUE

        for char in data:
            crc ^= ord(char) << 8
            for _ in range(8):
                if crc & 0x8000:
                    crc = (crc << 1) ^ self.CRC_POLYNOMIAL
                else:
                    crc = crc << 1
                crc &= 0xFFFF

        return format(crc, '04X')

    def encode(self, document: Union[PaymentDocument, Dict[str, Any]]) -> str:
        """
        Generate the complete payload string

        Any CRC field present in the document is dropped and recomputed.

        Args:
            document: PaymentDocument or its dict form

        Returns:
            Complete payload string with CRC
        """
        if document is None:
            raise InvalidInput("Invalid PIX data format. Expected a payment document.")
        if isinstance(document, dict):
            document = PaymentDocument.from_dict(document)
        if not isinstance(document, PaymentDocument) or not isinstance(document.fields, (list, tuple)):
            raise InvalidInput("Invalid PIX data format. Expected object with a fields list.")

        payload = "".join(
            self.encode_field(item)
            for item in _fields_from_items(document.fields)
            if item.id != self.CRC_TAG and _is_encodable(item)
        )

        payload += self.CRC_PREFIX
        return payload + self.calculate_crc16(payload)

    def decode_fields(self, payload: str, strict: bool = False, nested: bool = False) -> List[Field]:
        """
        Parse a payload string into its ordered field list

        At the top level the last 4 characters are reserved for the CRC
        value. A declared length running past the end of the input yields
        the truncated remainder, or raises InvalidInput when strict.

        Args:
            payload: Payload string, or the value of a composite field
            strict: Reject lengths that overrun the input
            nested: Scan a composite value to its end, with no CRC tail

        Returns:
            List of ScalarField / CompositeField
        """
        result: List[Field] = []
        end = len(payload) if nested else len(payload) - 4
        i = 0

        while i < end:
            if i + 4 > len(payload):
                if strict:
                    raise InvalidInput(f"Truncated field header at position {i}")
                break

            tag = payload[i:i+2]
            length_text = payload[i+2:i+4]
            if not LENGTH_RE.fullmatch(length_text):
                raise InvalidInput(f"Invalid length {length_text!r} for field {tag} at position {i}")
            length = int(length_text)

            value_start = i + 4
            value_end = value_start + length
            if value_end > len(payload) and strict:
                raise InvalidInput(
                    f"Field {tag} declares {length} characters but only "
                    f"{len(payload) - value_start} remain"
                )
            value = payload[value_start:value_end]

            if tag in self.COMPOSITE_TAGS:
                result.append(CompositeField(
                    id=tag,
                    fields=self.decode_fields(value, strict=strict, nested=True),
                    length=length_text,
                ))
            else:
                result.append(ScalarField(id=tag, value=value, length=length_text))

            i = value_end

        if not nested and i < len(payload):
            result.append(ScalarField(id=self.CRC_TAG, value=payload[-4:], length="04"))

        return result

    def annotate(self, fields: List[Field]) -> List[Field]:
        """Attach human readable names to known top-level and nested tags"""
        for item in fields:
            name = self.TOP_LEVEL_TAG_NAMES.get(item.id)
            if name:
                item.description = name

            if isinstance(item, CompositeField):
                names = self.SUBTAG_NAMES.get(item.id, {})
                for child in item.fields:
                    if child.id in names:
                        child.description = names[child.id]
        return fields

    def decode(self, payload: str, strict: bool = False) -> PaymentDocument:
        """
        Parse a payload string back to a PaymentDocument

        Args:
            payload: Complete payload string, CRC included
            strict: Reject declared lengths that overrun the input

        Returns:
            PaymentDocument with descriptions attached
        """
        if not isinstance(payload, str) or not payload:
            raise InvalidInput("Invalid PIX string. Expected non-empty string.")

        provided_crc = payload[-4:]
        calculated_crc = self.calculate_crc16(payload[:-4])
        if provided_crc != calculated_crc:
            raise ChecksumMismatch(calculated_crc, provided_crc)

        fields = self.decode_fields(payload, strict=strict)
        return PaymentDocument(fields=self.annotate(fields))

    def format_amount(self, amount: Union[str, int, float, Decimal]) -> str:
        """Format an amount with exactly two decimal places"""
        try:
            value = Decimal(str(amount).strip())
            if not value.is_finite():
                raise InvalidInput(f"Invalid amount: {amount!r}")
            # Raises InvalidOperation past the context precision
            return str(value.quantize(Decimal("0.01"), rounding=ROUND_HALF_UP))
        except InvalidOperation:
            raise InvalidInput(f"Invalid amount: {amount!r}") from None

    def create_payment(
            self,
            key: str,
            merchant_name: str,
            merchant_city: str,
            amount: Optional[Union[str, int, float, Decimal]] = None,
            transaction_id: Optional[str] = None,
            description: Optional[str] = None
    ) -> PaymentDocument:
        """
        Build the field tree of a static PIX payment

        Args:
            key: PIX key (CPF, CNPJ, email, phone or random key), kept as given
            merchant_name: Merchant name, uppercased
            merchant_city: Merchant city, uppercased
            amount: Transaction amount (optional)
            transaction_id: Reference label (optional)
            description: Free text shown to the payer (optional)

        Returns:
            PaymentDocument ready for encode()
        """
        for label, value in (("key", key), ("merchantName", merchant_name), ("merchantCity", merchant_city)):
            if not value or not isinstance(value, str):
                raise InvalidInput(
                    f"Missing required parameter {label}: key, merchantName, "
                    f"and merchantCity are required"
                )
        for label, value in (("transactionId", transaction_id), ("description", description)):
            if value and not isinstance(value, str):
                raise InvalidInput(f"{label} must be a string, got {type(value).__name__}")

        fields: List[Field] = [
            ScalarField("00", "01", "Payload Format Indicator"),
            CompositeField("26", [
                ScalarField("00", self.PIX_GUI, "GUI"),
                ScalarField("01", key, "Key"),
            ], "Merchant Account Information"),
            ScalarField("52", "0000", "Merchant Category Code (MCC)"),
            ScalarField("53", "986", "Transaction Currency"),  # BRL
        ]
        # Country, name and city always close the fixed part of the payload
        trailing: List[Field] = [
            ScalarField("58", "BR", "Country Code"),
            ScalarField("59", merchant_name.upper(), "Merchant Name"),
            ScalarField("60", merchant_city.upper(), "Merchant City"),
        ]

        # A falsy amount (None, "", 0) leaves the payment open
        if amount:
            fields.append(ScalarField("54", self.format_amount(amount), "Transaction Amount"))

        fields.extend(trailing)

        if transaction_id or description:
            additional_data: List[Field] = []
            if transaction_id:
                additional_data.append(ScalarField("05", transaction_id, "Transaction ID"))
            if description:
                additional_data.append(ScalarField("02", description, "Description"))
            additional_data.append(CompositeField("50", [
                ScalarField("00", self.BRCODE_GUI, "GUI"),
                ScalarField("01", self.BRCODE_VERSION, "version"),
            ], "Payment system specific template"))

            fields.append(CompositeField("62", additional_data, "Additional Data Field Template"))

        return PaymentDocument(fields=fields)

    def validate_key(self, key: Any) -> KeyValidation:
        """
        Classify a PIX key by its syntax

        Digit counts are checked first, on the key stripped of anything
        that is not a digit, so a formatted CPF or CNPJ is accepted.
        """
        if not key or not isinstance(key, str):
            return KeyValidation(is_valid=False, error="Key must be a non-empty string")

        digits = NON_DIGIT_RE.sub("", key)

        if CPF_RE.fullmatch(digits):
            return KeyValidation(is_valid=True, type=PixKeyType.CPF)
        if CNPJ_RE.fullmatch(digits):
            return KeyValidation(is_valid=True, type=PixKeyType.CNPJ)
        if EMAIL_RE.fullmatch(key):
            return KeyValidation(is_valid=True, type=PixKeyType.EMAIL)
        if PHONE_RE.fullmatch(key):
            return KeyValidation(is_valid=True, type=PixKeyType.PHONE)
        if RANDOM_KEY_RE.fullmatch(key):
            return KeyValidation(is_valid=True, type=PixKeyType.RANDOM)

        return KeyValidation(is_valid=False, error="Invalid PIX key format")


_codec = PixCodec()

checksum = _codec.calculate_crc16
encode = _codec.encode
decode = _codec.decode
create_payment = _codec.create_payment
validate_key = _codec.validate_key

# ---------- Command Line ----------

@dataclass
class PaymentConfig:
    key: str
    merchant_name: str
    merchant_city: str
    amount: Optional[str] = None
    transaction_id: Optional[str] = None
    description: Optional[str] = None

    @staticmethod
    def load(path: Path) -> "PaymentConfig":
        data = json.loads(Path(path).read_text(encoding="utf-8"))
        required = ["key", "merchant_name", "merchant_city"]
        for k in required:
            if k not in data:
                raise InvalidInput(f"Missing '{k}' in config JSON")
        return PaymentConfig(
            key=data["key"],
            merchant_name=data["merchant_name"],
            merchant_city=data["merchant_city"],
            amount=data.get("amount"),
            transaction_id=data.get("transaction_id"),
            description=data.get("description"),
        )


def run_encode(args) -> None:
    cfg = PaymentConfig.load(Path(args.config))
    document = create_payment(
        cfg.key,
        cfg.merchant_name,
        cfg.merchant_city,
        amount=cfg.amount,
        transaction_id=cfg.transaction_id,
        description=cfg.description,
    )
    payload = encode(document)

    print("Generated PIX Payload:")
    print(payload)
    print(f"\nPayload Length: {len(payload)} characters")

    print("\nParsed Structure:")
    print(json.dumps(decode(payload).to_dict(), indent=2))


def run_decode(args) -> None:
    document = decode(args.payload, strict=args.strict)
    print(json.dumps(document.to_dict(), indent=2))


def run_validate_key(args) -> None:
    result = validate_key(args.key)
    if result.is_valid:
        print(f"Valid {result.type.value} key")
    else:
        print(f"Invalid key: {result.error}")


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Encode, decode and inspect PIX BR Code payloads.")
    subparsers = parser.add_subparsers(dest="command", required=True)

    encode_parser = subparsers.add_parser("encode", help="Build a payload from a JSON payment config")
    encode_parser.add_argument("--config", required=True, help="Path to JSON config file")
    encode_parser.set_defaults(handler=run_encode)

    decode_parser = subparsers.add_parser("decode", help="Parse a payload and print its fields")
    decode_parser.add_argument("payload", help="PIX copy-and-paste payload")
    decode_parser.add_argument("--strict", action="store_true", help="Reject field lengths that overrun the payload")
    decode_parser.set_defaults(handler=run_decode)

    key_parser = subparsers.add_parser("validate-key", help="Classify a PIX key")
    key_parser.add_argument("key", help="PIX key")
    key_parser.set_defaults(handler=run_validate_key)

    args = parser.parse_args(argv)
    try:
        args.handler(args)
    except PixCodecError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
