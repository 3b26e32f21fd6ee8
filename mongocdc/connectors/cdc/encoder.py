"""
Record encoder.

Turns Operations into SourceRecords with independently formatted key and
value: relaxed Extended JSON, simplified JSON, raw BSON, or a dict validated
against a caller-supplied Avro record schema.
"""

from dataclasses import dataclass
from typing import Any, Dict, Optional, Union
import json
import logging

import bson
from bson import json_util
from fastavro import parse_schema
from fastavro.schema import SchemaParseException
from fastavro.validation import validate, ValidationError

from ...core.bson_convert import simplify
from .config import CDCConfig, OutputFormat
from .cursor import Position
from .errors import ConfigurationError, StructuralError
from .operations import Namespace, Operation

logger = logging.getLogger(__name__)

__all__ = ["OutputFormat", "SourceRecord", "RecordEncoder"]

Payload = Union[str, bytes, Dict[str, Any]]


@dataclass(frozen=True)
class SourceRecord:
    """One encoded record ready for the sink."""
    topic: str
    namespace: Namespace
    key: Payload
    value: Payload
    position: Position


def _load_schema(schema: Union[str, Dict[str, Any]], name: str) -> Dict[str, Any]:
    if isinstance(schema, str):
        try:
            schema = json.loads(schema)
        except ValueError as e:
            raise ConfigurationError(f"{name} is not valid JSON: {e}") from e
    if not isinstance(schema, dict) or schema.get("type") != "record":
        raise ConfigurationError(f"{name} must be an Avro record schema")
    try:
        return parse_schema(schema)
    except (SchemaParseException, ValueError, TypeError, KeyError) as e:
        raise ConfigurationError(f"{name} is not a valid Avro schema: {e}") from e


def _allows_null(field_type: Any) -> bool:
    if isinstance(field_type, list):
        return "null" in field_type
    return field_type == "null"


def _record_type(field_type: Any) -> Optional[Dict[str, Any]]:
    if isinstance(field_type, dict) and field_type.get("type") == "record":
        return field_type
    if isinstance(field_type, list):
        records = [t for t in field_type if isinstance(t, dict) and t.get("type") == "record"]
        if len(records) == 1:
            return records[0]
    return None


def project(document: Dict[str, Any], schema: Dict[str, Any]) -> Dict[str, Any]:
    """
    Shape ``document`` to the fields of an Avro record schema.

    Fields not in the schema are dropped. Absent fields take their default,
    or None when nullable.

    Raises:
        StructuralError: If a required field is absent
    """
    result: Dict[str, Any] = {}
    for avro_field in schema["fields"]:
        name = avro_field["name"]
        field_type = avro_field["type"]

        if name not in document or document[name] is None:
            if "default" in avro_field:
                result[name] = avro_field["default"]
            elif _allows_null(field_type):
                result[name] = None
            else:
                raise StructuralError(f"Field '{name}' is required by schema {schema.get('name')}")
            continue

        value = document[name]
        nested = _record_type(field_type)
        if nested is not None and isinstance(value, dict):
            result[name] = project(value, nested)
        else:
            result[name] = simplify(value)
    return result


class RecordEncoder:
    """
    Encodes Operations for the sink.

    Key source: ``{"_id": <event _id>}``, or the whole event when the key
    format is ``schema`` (the schema picks the fields). Value source: the
    event envelope, or only ``fullDocument`` when
    ``publish_full_document_only`` is set.

    Example:
        >>> encoder = RecordEncoder(CDCConfig(database="shop", output_format_value="simplified_json"))
        >>> record = encoder.encode(operation)
        >>> record.topic
        'shop.orders'
    """

    def __init__(self, config: CDCConfig):
        self.config = config
        self.key_schema = None
        self.value_schema = None
        if config.output_format_key is OutputFormat.SCHEMA:
            self.key_schema = _load_schema(config.output_schema_key, "output_schema_key")
        if config.output_format_value is OutputFormat.SCHEMA:
            self.value_schema = _load_schema(config.output_schema_value, "output_schema_value")

    def topic_for(self, namespace: Namespace) -> str:
        if self.config.topic_prefix:
            return f"{self.config.topic_prefix}.{namespace.full_name}"
        return namespace.full_name

    def encode(self, operation: Operation) -> SourceRecord:
        """
        Encode one operation.

        Raises:
            StructuralError: If a document does not fit the configured schema
        """
        event = operation.event
        if self.config.output_format_key is OutputFormat.SCHEMA:
            key_document = event
        else:
            key_document = {"_id": event.get("_id")}

        if self.config.publish_full_document_only:
            value_document = operation.full_document
            if value_document is None:
                raise StructuralError(
                    f"{operation.op_type.value} on {operation.namespace} has no full document"
                )
        else:
            value_document = event

        return SourceRecord(
            topic=self.topic_for(operation.namespace),
            namespace=operation.namespace,
            key=self.render(key_document, self.config.output_format_key, self.key_schema),
            value=self.render(value_document, self.config.output_format_value, self.value_schema),
            position=operation.position,
        )

    def render(
        self,
        document: Dict[str, Any],
        output_format: OutputFormat,
        schema: Optional[Dict[str, Any]] = None
    ) -> Payload:
        if output_format is OutputFormat.JSON:
            return json_util.dumps(document, json_options=json_util.RELAXED_JSON_OPTIONS)
        if output_format is OutputFormat.SIMPLIFIED_JSON:
            return json.dumps(simplify(document))
        if output_format is OutputFormat.BSON:
            return bson.encode(document)

        datum = project(document, schema)
        try:
            validate(datum, schema, raise_errors=True)
        except (ValidationError, ValueError, TypeError) as e:
            logger.error(
                f"Document does not match schema {schema.get('name')}: {e}",
                extra={"job_id": self.config.job_id, "schema": schema.get("name")}
            )
            raise StructuralError(f"Document does not match schema {schema.get('name')}: {e}") from e
        return datum
