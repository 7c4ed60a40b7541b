"""
IPNI Advertisement Metadata Decoder

Advertisement metadata is varint(transport code) followed by a
transport-specific payload.

Transport codes:
- 0x900: bitswap
- 0x910: graphsync (payload is DAG-CBOR deal info: PieceCID, VerifiedDeal, FastRetrieval)
- 0x920: http

Only graphsync metadata carries a piece CID.
"""

import base64
import binascii
from typing import Union

import dag_cbor
from multiformats import CID, varint

from ..errors import MetadataDecodeError
from ..types import AdvertisementMetadata, DealInfo


TRANSPORT_BITSWAP = 0x900
TRANSPORT_GRAPHSYNC = 0x910
TRANSPORT_HTTP = 0x920

TRANSPORT_NAMES = {
    TRANSPORT_BITSWAP: "bitswap",
    TRANSPORT_GRAPHSYNC: "graphsync",
    TRANSPORT_HTTP: "http",
}


def decode_base64(value: str) -> bytes:
    """Decode standard base64, tolerating missing padding."""
    padded = value + "=" * (-len(value) % 4)
    return base64.b64decode(padded, validate=True)


def transport_name(code: int) -> str:
    return TRANSPORT_NAMES.get(code, f"0x{code:x}")


def parse_metadata(metadata: Union[str, bytes]) -> AdvertisementMetadata:
    """
    Decode advertisement metadata.

    Args:
        metadata: base64 text from Metadata["/"].bytes, or the raw bytes

    Returns:
        AdvertisementMetadata with the protocol name and, for graphsync,
        the deal descriptor

    Raises:
        MetadataDecodeError: on malformed base64, varint or CBOR payload
    """
    try:
        raw = decode_base64(metadata) if isinstance(metadata, str) else bytes(metadata)
    except (binascii.Error, ValueError) as e:
        raise MetadataDecodeError(e) from e

    if not raw:
        raise MetadataDecodeError("empty metadata")

    try:
        code, _, payload = varint.decode_raw(raw)
    except ValueError as e:
        raise MetadataDecodeError(e) from e

    protocol = transport_name(code)
    if code != TRANSPORT_GRAPHSYNC:
        return AdvertisementMetadata(protocol=protocol)

    try:
        record = dag_cbor.decode(bytes(payload))
    except Exception as e:
        raise MetadataDecodeError(e) from e

    if not isinstance(record, dict) or record.get("PieceCID") is None:
        raise MetadataDecodeError(f"graphsync metadata has no PieceCID: {record!r}")
    if not isinstance(record["PieceCID"], CID):
        raise MetadataDecodeError(f"graphsync PieceCID is not a CID link: {record['PieceCID']!r}")

    deal = DealInfo(
        piece_cid=record["PieceCID"].encode("base32"),
        verified_deal=bool(record.get("VerifiedDeal", False)),
        fast_retrieval=bool(record.get("FastRetrieval", False)),
    )
    return AdvertisementMetadata(protocol=protocol, deal=deal)
