"""Manifest loading, variable substitution and validation."""

import logging
import re
from collections.abc import Mapping
from pathlib import Path
from typing import Any, Optional, Union

import yaml
from pydantic import ValidationError as PydanticValidationError

from .exceptions import ParseError, ValidationError
from .models import (
    DEPENDS_ON_ANNOTATION,
    WAIT_READY_ANNOTATION,
    ManifestSet,
    ReadinessRequirement,
    Resource,
    ResourceId,
    ResourceKind,
)
from .resolver import order

logger = logging.getLogger(__name__)

ManifestSource = Union[str, Path, list[dict[str, Any]]]

# "$$" is an escaped dollar, "${NAME}" / "${NAME:-default}" are placeholders
_VAR_PATTERN = re.compile(r"\$(\$|\{([A-Za-z_][A-Za-z0-9_]*)(?::-([^}]*))?\})")

_KINDS = {kind.value.lower(): kind for kind in ResourceKind}

_NATIVE_KEYS = {
    "kind",
    "name",
    "namespace",
    "dependsOn",
    "readiness",
    "labels",
    "annotations",
    "spec",
}

# Kubernetes-form body fields carried into Resource.spec, per kind
_BODY_FIELDS = {
    ResourceKind.NAMESPACE: ("spec",),
    ResourceKind.CONFIG_MAP: ("data", "binaryData", "immutable"),
    ResourceKind.DEPLOYMENT: ("spec",),
    ResourceKind.SERVICE: ("spec",),
}

_YAML_SUFFIXES = (".yaml", ".yml")


def load(
    source: ManifestSource,
    variables: Optional[Mapping[str, str]] = None,
    name: Optional[str] = None,
    default_namespace: str = "default",
) -> ManifestSet:
    """
    Load and validate a manifest set.

    Args:
        source: YAML file, directory of YAML files, YAML text, or parsed documents
        variables: Values for ``${NAME}`` placeholders
        name: Manifest set name (defaults to the file or directory stem)
        default_namespace: Namespace for namespaced resources that omit one

    Returns:
        Validated ManifestSet

    Raises:
        ParseError: If a document is malformed or a placeholder is unresolved
        ValidationError: If identities collide or dependencies dangle
        CycleError: If the dependency graph is cyclic
    """
    documents, default_name = _read_documents(source)
    variables = dict(variables or {})

    resources = []
    for position, document in documents:
        document = substitute(document, variables, position)
        resources.append(parse_document(document, position, default_namespace))

    manifest_set = ManifestSet(
        name=name or default_name,
        resources=tuple(_add_namespace_edges(resources)),
    )
    validate(manifest_set)

    logger.info(
        f"Loaded manifest set {manifest_set.name} with "
        f"{len(manifest_set.resources)} resources"
    )
    return manifest_set


def validate(manifest_set: ManifestSet) -> None:
    """
    Enforce manifest set invariants.

    Raises:
        ValidationError: On duplicate identities or dangling references
        CycleError: If the dependency graph is cyclic
    """
    seen: set[ResourceId] = set()
    for resource in manifest_set.resources:
        if resource.id in seen:
            raise ValidationError(
                f"Duplicate resource {resource.id} in manifest set {manifest_set.name}"
            )
        seen.add(resource.id)

    for resource in manifest_set.resources:
        missing = sorted(
            (dep for dep in resource.depends_on if dep not in seen),
            key=ResourceId.sort_key,
        )
        if missing:
            raise ValidationError(
                f"{resource.id} depends on unknown resource(s): "
                + ", ".join(str(dep) for dep in missing)
            )

    order(manifest_set)


def substitute(value: Any, variables: Mapping[str, str], position: str = "") -> Any:
    """
    Resolve ``${NAME}`` placeholders in every string of a document.

    Raises:
        ParseError: If a placeholder has no value and no default
    """
    if isinstance(value, str):
        return _substitute_string(value, variables, position)
    if isinstance(value, dict):
        return {
            substitute(k, variables, position): substitute(v, variables, position)
            for k, v in value.items()
        }
    if isinstance(value, list):
        return [substitute(item, variables, position) for item in value]
    return value


def _substitute_string(text: str, variables: Mapping[str, str], position: str) -> str:
    def replace(match: re.Match) -> str:
        if match.group(1) == "$":
            return "$"
        var_name, default = match.group(2), match.group(3)
        if var_name in variables:
            return str(variables[var_name])
        if default is not None:
            return default
        raise ParseError(f"Unresolved variable ${{{var_name}}}", position)

    return _VAR_PATTERN.sub(replace, text)


def parse_document(
    document: Any, position: str = "", default_namespace: str = "default"
) -> Resource:
    """
    Build a Resource from one manifest document.

    Raises:
        ParseError: If the document is malformed or names an unknown kind
    """
    if not isinstance(document, dict):
        raise ParseError(
            f"Expected a mapping, got {type(document).__name__}", position
        )

    kind = parse_kind(document.get("kind"), position)

    if "metadata" in document or "apiVersion" in document:
        fields = _kubernetes_fields(document, kind, position)
    else:
        unknown = set(document) - _NATIVE_KEYS
        if unknown:
            raise ParseError(
                f"Unknown field(s): {', '.join(sorted(unknown))}", position
            )
        fields = {
            "name": document.get("name"),
            "namespace": document.get("namespace"),
            "labels": document.get("labels") or {},
            "annotations": document.get("annotations") or {},
            "spec": document.get("spec") or {},
            "depends_on": document.get("dependsOn") or [],
            "readiness": _parse_readiness(document.get("readiness"), position),
        }

    resource_name = fields["name"]
    if not isinstance(resource_name, str) or not resource_name:
        raise ParseError(f"{kind.value} is missing a name", position)

    if kind.namespaced:
        namespace = fields["namespace"] or default_namespace
    else:
        namespace = ""
    if not isinstance(namespace, str):
        raise ParseError(f"Namespace of {kind.value}/{resource_name} must be a string", position)

    if not isinstance(fields["spec"], dict):
        raise ParseError(f"spec of {kind.value}/{resource_name} must be a mapping", position)
    if not isinstance(fields["depends_on"], list):
        raise ParseError(f"dependsOn of {kind.value}/{resource_name} must be a list", position)

    depends_on = frozenset(
        parse_reference(ref, namespace, position) for ref in fields["depends_on"]
    )

    try:
        return Resource(
            kind=kind,
            name=resource_name,
            namespace=namespace,
            spec=fields["spec"],
            depends_on=depends_on,
            labels=fields["labels"],
            annotations=fields["annotations"],
            readiness=fields["readiness"],
        )
    except PydanticValidationError as e:
        raise ParseError(f"Invalid {kind.value}/{resource_name}: {e}", position) from e


def parse_kind(value: Any, position: str = "") -> ResourceKind:
    if not isinstance(value, str) or not value:
        raise ParseError("Document is missing a kind", position)
    kind = _KINDS.get(value.lower())
    if kind is None:
        raise ParseError(
            f"Unknown kind {value!r} (expected one of: "
            + ", ".join(k.value for k in ResourceKind)
            + ")",
            position,
        )
    return kind


def parse_reference(ref: Any, namespace: str, position: str = "") -> ResourceId:
    """
    Parse a dependency reference.

    Accepts ``Kind/name``, ``Kind/namespace/name`` or a mapping with ``kind``,
    ``name`` and optionally ``namespace``. The namespace defaults to the
    referring resource's namespace.
    """
    if isinstance(ref, dict):
        kind = parse_kind(ref.get("kind"), position)
        ref_name = ref.get("name")
        ref_namespace = ref.get("namespace") or namespace
    elif isinstance(ref, str):
        parts = ref.strip().split("/")
        if len(parts) == 2:
            kind = parse_kind(parts[0], position)
            ref_namespace, ref_name = namespace, parts[1]
        elif len(parts) == 3:
            kind = parse_kind(parts[0], position)
            ref_namespace, ref_name = parts[1], parts[2]
        else:
            raise ParseError(
                f"Invalid dependency reference {ref!r} "
                "(expected Kind/name or Kind/namespace/name)",
                position,
            )
    else:
        raise ParseError(f"Invalid dependency reference {ref!r}", position)

    if not isinstance(ref_name, str) or not ref_name:
        raise ParseError(f"Dependency reference {ref!r} is missing a name", position)

    return ResourceId(
        kind=kind,
        name=ref_name,
        namespace=ref_namespace if kind.namespaced else "",
    )


def load_variables_file(path: Union[str, Path]) -> dict[str, str]:
    """
    Read a YAML mapping of substitution variables.

    Raises:
        ParseError: If the file cannot be read or is not a flat mapping
    """
    path = Path(path)
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8"))
    except (OSError, UnicodeDecodeError) as e:
        raise ParseError(f"Cannot read variables file: {e}", str(path)) from e
    except yaml.YAMLError as e:
        raise ParseError(f"Invalid YAML: {e}", str(path)) from e

    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ParseError("Variables file must contain a mapping", str(path))
    for key, value in data.items():
        if isinstance(value, (dict, list)):
            raise ParseError(f"Variable {key} must be a scalar", str(path))
    return {str(k): "" if v is None else str(v) for k, v in data.items()}


def _kubernetes_fields(
    document: dict[str, Any], kind: ResourceKind, position: str
) -> dict[str, Any]:
    metadata = document.get("metadata") or {}
    if not isinstance(metadata, dict):
        raise ParseError("metadata must be a mapping", position)

    for field in ("labels", "annotations"):
        if not isinstance(metadata.get(field) or {}, dict):
            raise ParseError(f"metadata.{field} must be a mapping", position)

    annotations = dict(metadata.get("annotations") or {})
    depends_raw = annotations.pop(DEPENDS_ON_ANNOTATION, "")
    wait_raw = annotations.pop(WAIT_READY_ANNOTATION, None)

    body = {
        field: document[field]
        for field in _BODY_FIELDS[kind]
        if field in document
    }
    if kind in (ResourceKind.DEPLOYMENT, ResourceKind.SERVICE, ResourceKind.NAMESPACE):
        body = body.get("spec") or {}

    return {
        "name": metadata.get("name"),
        "namespace": metadata.get("namespace"),
        "labels": metadata.get("labels") or {},
        "annotations": annotations,
        "spec": body,
        "depends_on": [r.strip() for r in str(depends_raw).split(",") if r.strip()],
        "readiness": _parse_wait_annotation(wait_raw, position),
    }


def _parse_readiness(value: Any, position: str) -> Optional[ReadinessRequirement]:
    if value is None or value is False:
        return None
    if value is True:
        return ReadinessRequirement()
    if isinstance(value, dict):
        unknown = set(value) - {"timeoutSeconds", "critical"}
        if unknown:
            raise ParseError(
                f"Unknown readiness field(s): {', '.join(sorted(unknown))}", position
            )
        try:
            return ReadinessRequirement(
                timeout_seconds=value.get("timeoutSeconds"),
                critical=value.get("critical", True),
            )
        except PydanticValidationError as e:
            raise ParseError(f"Invalid readiness: {e}", position) from e
    raise ParseError(f"Invalid readiness value {value!r}", position)


def _parse_wait_annotation(value: Any, position: str) -> Optional[ReadinessRequirement]:
    if value is None:
        return None
    text = str(value).strip().lower()
    if text in ("", "false", "no"):
        return None
    if text in ("true", "yes"):
        return ReadinessRequirement()
    try:
        return ReadinessRequirement(timeout_seconds=float(text))
    except (ValueError, PydanticValidationError) as e:
        raise ParseError(
            f"Invalid {WAIT_READY_ANNOTATION} annotation {value!r}", position
        ) from e


def _add_namespace_edges(resources: list[Resource]) -> list[Resource]:
    """Make namespaced resources depend on their Namespace when it is declared."""
    declared = {r.name for r in resources if r.kind == ResourceKind.NAMESPACE}
    result = []
    for resource in resources:
        if resource.kind.namespaced and resource.namespace in declared:
            ns_id = ResourceId(kind=ResourceKind.NAMESPACE, name=resource.namespace)
            if ns_id not in resource.depends_on:
                resource = resource.model_copy(
                    update={"depends_on": resource.depends_on | {ns_id}}
                )
        result.append(resource)
    return result


def _read_documents(source: ManifestSource) -> tuple[list[tuple[str, Any]], str]:
    """Return (position, document) pairs plus a default manifest set name."""
    if isinstance(source, list):
        return [(f"document {i + 1}", doc) for i, doc in enumerate(source)], "manifest"

    if isinstance(source, str) and ("\n" in source or not Path(source).exists()):
        if "\n" not in source and source.endswith(_YAML_SUFFIXES):
            raise ParseError("Manifest file not found", source)
        return _parse_yaml(source, "<string>"), "manifest"

    path = Path(source)
    if path.is_dir():
        files = sorted(
            p for p in path.iterdir() if p.is_file() and p.suffix in _YAML_SUFFIXES
        )
        if not files:
            raise ParseError("No YAML manifests found", str(path))
        documents = []
        for file in files:
            documents.extend(_parse_yaml(_read_text(file), str(file)))
        return documents, path.name

    if not path.exists():
        raise ParseError("Manifest file not found", str(path))
    return _parse_yaml(_read_text(path), str(path)), path.stem


def _read_text(path: Path) -> str:
    try:
        return path.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as e:
        raise ParseError(f"Cannot read manifest: {e}", str(path)) from e


def _parse_yaml(text: str, origin: str) -> list[tuple[str, Any]]:
    try:
        raw = list(yaml.safe_load_all(text))
    except yaml.YAMLError as e:
        mark = getattr(e, "problem_mark", None)
        where = f"{origin}:{mark.line + 1}" if mark is not None else origin
        raise ParseError(f"Invalid YAML: {e}", where) from e

    return [
        (f"{origin} (document {i + 1})", doc)
        for i, doc in enumerate(raw)
        if doc is not None
    ]
