#!/usr/bin/env python3
# -*- coding: utf-8 -*-

"""
layoutlens: Print the storage layout of a compiled Solidity contract.

Examples
  # Resolve a contract from a Hardhat artifacts directory
  $ layoutlens print Token
  $ layoutlens print contracts/Token.sol:Token --artifacts ./artifacts

  # Read a build-info (or bare solc output) file directly, JSON out
  $ layoutlens print Vault --build-info build-info/4f1c.json --raw

  # Slots as 32-byte words, ready for eth_getStorageAt
  $ layoutlens print Vault --mode layout --hex
"""

import json
import os
import re
import subprocess
from dataclasses import dataclass, fields, replace
from typing import Any, Dict, Iterable, List, Optional, Tuple

import click
from eth_utils import encode_hex, int_to_big_endian

MAX_DEPTH = 64
# each level costs a few interpreter frames; stay well under sys.getrecursionlimit()
MAX_DEPTH_CEILING = 128

LENGTH_RE = re.compile(r"\[(\d+)\]$")
TYPE_LENGTH_RE = re.compile(r"\)(\d+)_storage$")

# ----------------------- utilities -----------------------

def pad32(b: bytes) -> bytes:
    return b.rjust(32, b"\x00")

def slot_hex(slot: int) -> str:
    """32-byte hex word for a slot number, as eth_getStorageAt expects it."""
    if slot < 0:
        raise MalformedInput(f"Slot must be non-negative, got {slot}")
    return encode_hex(pad32(int_to_big_endian(slot)))

def contract_name_of(full_name: str) -> str:
    return full_name.rsplit(":", 1)[-1]

def load_json(path: str) -> Any:
    try:
        with open(path, "r", encoding="utf-8") as f:
            return json.load(f)
    except json.JSONDecodeError as e:
        raise MalformedInput(f"{path} is not valid JSON: {e}") from e

# ----------------------- errors -----------------------

class LayoutError(click.ClickException):
    """Base class; the message is shown to the user as-is."""

class MalformedInput(LayoutError):
    pass

class NotFound(LayoutError):
    pass

class NotAvailable(LayoutError):
    pass

class AmbiguousName(LayoutError):
    def __init__(self, name: str, candidates: List[str]):
        self.name = name
        self.candidates = candidates
        super().__init__(
            f"more than one path found for {name} ({len(candidates)} candidates), "
            f'please use full path like "contracts/target.sol:{name}"'
        )

class UnresolvedReference(LayoutError):
    def __init__(self, key: Any):
        self.key = key
        super().__init__(f"Declaration {key!r} is referenced but missing from the compiler output")

class RecursionLimitExceeded(LayoutError):
    def __init__(self, limit: int):
        self.limit = limit
        super().__init__(f"Type nesting deeper than {limit} levels; is a struct referencing itself?")

# ----------------------- models -----------------------

@dataclass(frozen=True)
class Declaration:
    """
    One member/element record as both input modes describe it.

    `members` and `element` are keys into the owning source's index,
    never the records themselves.
    """
    label: str
    type: str
    type_name: str
    id: Any = None
    visibility: Optional[str] = None
    slot: Optional[int] = None
    offset: Optional[int] = None
    constant: bool = False
    array: bool = False
    length: Optional[int] = None
    members: Any = None
    key_type: Optional[str] = None
    element: Any = None

@dataclass
class TypeReference:
    name: str
    type: str
    type_name: str
    id: Any = None
    visibility: Optional[str] = None
    slot: Optional[int] = None
    offset: Optional[int] = None
    length: Optional[int] = None
    key_type: Optional[str] = None
    sub_type: Optional[List["TypeReference"]] = None

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {}
        for f in fields(self):
            value = getattr(self, f.name)
            if value is None:
                continue
            if f.name == "sub_type":
                value = [child.to_dict() for child in value]
            out[f.name] = value
        return out

# ----------------------- indexing -----------------------

def index_ast(output: Dict[str, Any]) -> Tuple[Dict[Any, Any], Dict[str, Any]]:
    """
    Flatten every AST node carrying an `id` into one table.

    Returns (nodes by id, top-level ContractDefinitions by "path:Name").
    Only the `ast` of each source entry is walked; the entry itself has a
    source-unit id that would clash with node ids.
    """
    sources = output.get("sources") if isinstance(output, dict) else None
    if not isinstance(sources, dict):
        raise MalformedInput("Compiler output has no 'sources' section")

    nodes: Dict[Any, Any] = {}
    contracts: Dict[str, Any] = {}
    for path, unit in sources.items():
        ast = unit.get("ast") if isinstance(unit, dict) else None
        if not isinstance(ast, dict):
            raise MalformedInput(f"Source '{path}' carries no AST")
        stack: List[Any] = [ast]
        while stack:
            node = stack.pop()
            if isinstance(node, dict):
                if "id" in node:
                    nodes[node["id"]] = node
                stack.extend(node.values())
            elif isinstance(node, list):
                stack.extend(node)
        for node in ast.get("nodes", []):
            if isinstance(node, dict) and node.get("nodeType") == "ContractDefinition":
                contracts[f"{path}:{node['name']}"] = node
    return nodes, contracts

def index_layouts(output: Dict[str, Any]) -> Tuple[Dict[str, Any], Dict[str, Any]]:
    """Re-key contracts as "source:Name" and merge their type tables."""
    units = output.get("contracts") if isinstance(output, dict) else None
    if not isinstance(units, dict):
        raise MalformedInput("Compiler output has no 'contracts' section")

    contracts: Dict[str, Any] = {}
    types: Dict[str, Any] = {}
    for source, named in units.items():
        if not isinstance(named, dict):
            raise MalformedInput(f"Contracts of '{source}' are not an object")
        for name, contract in named.items():
            contracts[f"{source}:{name}"] = contract
            layout = contract.get("storageLayout") if isinstance(contract, dict) else None
            if isinstance(layout, dict):
                # null when the contract has no state variables
                types.update(layout.get("types") or {})
    return contracts, types

class AstSource:
    """Type shapes read from the solc AST; no slots."""

    def __init__(self, output: Dict[str, Any]):
        self.nodes, self.contracts = index_ast(output)

    def node(self, key: Any) -> Dict[str, Any]:
        if key not in self.nodes:
            raise UnresolvedReference(key)
        return self.nodes[key]

    def storage(self, full_name: str) -> List[Declaration]:
        contract = self.contracts.get(full_name)
        if contract is None:
            raise NotFound(f"Contract {full_name} not found in compiler output")
        # linearization lists the most-derived contract first
        bases = contract.get("linearizedBaseContracts") or [contract["id"]]
        result: List[Declaration] = []
        for base_id in reversed(bases):
            result.extend(self._variables(self.node(base_id).get("nodes", [])))
        return result

    def members(self, key: Any) -> List[Declaration]:
        return self._variables(self.node(key).get("members", []))

    def element(self, key: Any) -> Declaration:
        node = self.node(key)
        desc = node.get("typeDescriptions") or {}
        return Declaration(
            label="",
            type=desc.get("typeIdentifier", ""),
            type_name=desc.get("typeString", ""),
            id=key,
            **self._shape(node),
        )

    def _variables(self, nodes: Iterable[Any]) -> List[Declaration]:
        return [self._variable(n) for n in nodes
                if isinstance(n, dict) and n.get("nodeType") == "VariableDeclaration"]

    def _variable(self, node: Dict[str, Any]) -> Declaration:
        desc = node.get("typeDescriptions") or {}
        constant = node.get("constant") is True or node.get("mutability") in ("constant", "immutable")
        return Declaration(
            label=node.get("name", ""),
            type=desc.get("typeIdentifier", ""),
            type_name=desc.get("typeString", ""),
            id=node.get("id"),
            visibility=node.get("visibility"),
            constant=constant,
            **({} if constant else self._shape(node.get("typeName"))),
        )

    def _shape(self, type_node: Any) -> Dict[str, Any]:
        if not isinstance(type_node, dict):
            return {}
        kind = type_node.get("nodeType")
        if kind == "ArrayTypeName":
            return {"array": True,
                    "length": self._array_length(type_node),
                    "element": self._child_id(type_node, "baseType")}
        if kind == "Mapping":
            key_desc = (type_node.get("keyType") or {}).get("typeDescriptions") or {}
            return {"key_type": key_desc.get("typeIdentifier", ""),
                    "element": self._child_id(type_node, "valueType")}
        if kind == "UserDefinedTypeName":
            target = self.node(type_node.get("referencedDeclaration"))
            # contracts, enums and value types stay opaque
            if target.get("nodeType") == "StructDefinition":
                return {"members": target["id"]}
        return {}

    @staticmethod
    def _child_id(type_node: Dict[str, Any], field: str) -> Any:
        child = type_node.get(field)
        if not isinstance(child, dict) or "id" not in child:
            raise MalformedInput(f"{type_node.get('nodeType')} node {type_node.get('id')} has no {field}")
        return child["id"]

    @staticmethod
    def _array_length(type_node: Dict[str, Any]) -> Optional[int]:
        length = type_node.get("length")
        if length is None:
            return None
        value = length.get("value") if isinstance(length, dict) else None
        try:
            return int(value, 0)
        except (TypeError, ValueError):
            pass
        # constant expression as the bound; the type string has it folded
        type_string = (type_node.get("typeDescriptions") or {}).get("typeString", "")
        m = LENGTH_RE.search(type_string)
        if not m:
            raise MalformedInput(f"Cannot read the length of array node {type_node.get('id')}")
        return int(m.group(1))

class LayoutSource:
    """The compiler's own storageLayout output, slots included."""

    def __init__(self, output: Dict[str, Any]):
        self.contracts, self.types = index_layouts(output)

    def type_record(self, key: str) -> Dict[str, Any]:
        if key not in self.types:
            raise UnresolvedReference(key)
        return self.types[key]

    def storage(self, full_name: str) -> List[Declaration]:
        contract = self.contracts.get(full_name)
        if contract is None:
            raise NotFound(f"Contract {full_name} not found in compiler output")
        layout = contract.get("storageLayout") if isinstance(contract, dict) else None
        if not isinstance(layout, dict):
            raise MalformedInput(f"{full_name} has no storageLayout; enable it in outputSelection")
        return [self._entry(e) for e in layout.get("storage") or []]

    def members(self, key: str) -> List[Declaration]:
        return [self._entry(e) for e in self.type_record(key).get("members", [])]

    def element(self, key: str) -> Declaration:
        record = self.type_record(key)
        return Declaration(label="", type=key, type_name=record.get("label", key),
                           **self._shape(key, record))

    def _entry(self, entry: Dict[str, Any]) -> Declaration:
        try:
            key = entry["type"]
            label = entry["label"]
            slot = int(entry["slot"], 10) if isinstance(entry["slot"], str) else int(entry["slot"])
            offset = int(entry.get("offset", 0))
        except (KeyError, TypeError, ValueError) as e:
            raise MalformedInput(f"Bad storage entry {entry!r}: {e}") from e
        record = self.type_record(key)
        return Declaration(
            label=label,
            type=key,
            type_name=record.get("label", key),
            id=entry.get("astId"),
            slot=slot,
            offset=offset,
            **self._shape(key, record),
        )

    @staticmethod
    def _shape(key: str, record: Dict[str, Any]) -> Dict[str, Any]:
        encoding = record.get("encoding")
        if encoding == "mapping":
            return {"key_type": record["key"], "element": record["value"]}
        if "base" in record:
            if encoding == "dynamic_array":
                return {"array": True, "element": record["base"]}
            m = TYPE_LENGTH_RE.search(key) or LENGTH_RE.search(record.get("label", ""))
            if not m:
                raise MalformedInput(f"Cannot read the length of array type {key}")
            return {"array": True, "length": int(m.group(1)), "element": record["base"]}
        if "members" in record:
            return {"members": key}
        return {}

def open_source(artifact: Dict[str, Any], mode: str = "auto"):
    """Pick the input adapter for a build-info or bare compiler output."""
    if not isinstance(artifact, dict):
        raise MalformedInput("Build artifact must be a JSON object")
    output = artifact.get("output", artifact)
    if mode == "auto":
        units = output.get("contracts") if isinstance(output, dict) else None
        has_layout = isinstance(units, dict) and any(
            isinstance(c, dict) and "storageLayout" in c
            for named in units.values() if isinstance(named, dict)
            for c in named.values()
        )
        mode = "layout" if has_layout else "ast"
    if mode == "layout":
        return LayoutSource(output)
    if mode == "ast":
        return AstSource(output)
    raise click.BadParameter(f"Unknown mode: {mode}")

# ----------------------- classification -----------------------

def classify(decl: Declaration) -> Dict[str, Any]:
    if decl.length is not None:
        return {"kind": "staticarray", "len": decl.length, "elem": decl.element}
    if decl.array:
        return {"kind": "dynarray", "elem": decl.element}
    if decl.members is not None:
        return {"kind": "struct", "members": decl.members}
    if decl.key_type is not None and decl.element is not None:
        return {"kind": "mapping", "key": decl.key_type, "value": decl.element}
    return {"kind": "elementary"}

# ----------------------- resolution -----------------------

def resolve(source, declarations: Iterable[Declaration], depth: int = 0,
            max_depth: int = MAX_DEPTH) -> List[TypeReference]:
    """
    Build one TypeReference per non-constant declaration, in order.

    Reused struct types are expanded again at every occurrence, so the
    resulting tree never shares nodes.
    """
    if depth > max_depth:
        raise RecursionLimitExceeded(max_depth)
    return [_reference(source, d, depth, max_depth) for d in declarations if not d.constant]

def _reference(source, decl: Declaration, depth: int, max_depth: int) -> TypeReference:
    ref = TypeReference(
        name=decl.label,
        type=decl.type,
        type_name=decl.type_name,
        id=decl.id,
        visibility=decl.visibility,
        slot=decl.slot,
        offset=decl.offset,
    )
    shape = classify(decl)
    kind = shape["kind"]
    if kind == "elementary":
        return ref
    if kind == "struct":
        ref.sub_type = resolve(source, source.members(shape["members"]), depth + 1, max_depth)
        return ref
    if kind == "mapping":
        ref.key_type = shape["key"]
        ref.sub_type = _element(source, shape["value"], f"[{shape['key']}]", depth + 1, max_depth)
        return ref
    if kind == "staticarray":
        ref.length = shape["len"]
    ref.sub_type = _element(source, shape["elem"], "[]", depth + 1, max_depth)
    return ref

def _element(source, key: Any, label: str, depth: int, max_depth: int) -> List[TypeReference]:
    """Shape of one array element / mapping value; never one node per index."""
    element = source.element(key)
    shape = classify(element)
    if shape["kind"] == "elementary":
        return []
    if shape["kind"] == "struct":
        return resolve(source, source.members(shape["members"]), depth, max_depth)
    # nested array or mapping: describe it with a single anonymous node
    return resolve(source, [replace(element, label=label)], depth, max_depth)

# ----------------------- entry point -----------------------

def get_full_name(name: str, candidates: Iterable[str]) -> str:
    """Expand a bare contract name to "path:Name"; qualified names pass through."""
    if ":" in name:
        return name
    found = [c for c in candidates if contract_name_of(c) == name]
    if len(found) > 1:
        raise AmbiguousName(name, found)
    if not found:
        raise NotFound(f"No contract named {name}")
    return found[0]

def resolve_storage_layout(name: str, artifact: Dict[str, Any], mode: str = "auto",
                           max_depth: int = MAX_DEPTH) -> List[TypeReference]:
    """
    Storage layout of one contract from a build-info or compiler output.

    In "ast" mode only the type shape is known: slot and offset stay None.
    In "layout" mode they come straight from the compiler.
    """
    source, full_name = select_source(artifact, name, mode)
    return layout_of(source, full_name, max_depth)

def select_source(artifact: Dict[str, Any], name: str, mode: str = "auto"):
    """
    Adapter and "path:Name" for one contract.

    In "auto" mode the compiler layout is used only when this very contract
    carries one; outputSelection may enable it for some files and not others.
    """
    if mode != "auto":
        source = open_source(artifact, mode)
        return source, get_full_name(name, source.contracts)
    source = open_source(artifact, "auto")
    full_name = get_full_name(name, source.contracts)
    if isinstance(source, LayoutSource):
        contract = source.contracts.get(full_name)
        # unknown names stay here so that storage() reports NotFound
        if not isinstance(contract, dict) or isinstance(contract.get("storageLayout"), dict):
            return source, full_name
        source = open_source(artifact, "ast")
        full_name = get_full_name(name, source.contracts)
    return source, full_name

def layout_of(source, full_name: str, max_depth: int = MAX_DEPTH) -> List[TypeReference]:
    if not 1 <= max_depth <= MAX_DEPTH_CEILING:
        raise click.BadParameter(f"max_depth must be between 1 and {MAX_DEPTH_CEILING}, got {max_depth}")
    try:
        return resolve(source, source.storage(full_name), max_depth=max_depth)
    except RecursionError as e:
        raise RecursionLimitExceeded(max_depth) from e

# ----------------------- artifacts -----------------------

def fully_qualified_names(artifacts_dir: str) -> List[str]:
    """Fully-qualified "source:Name" of every Hardhat artifact under `artifacts_dir`."""
    if not os.path.isdir(artifacts_dir):
        raise NotAvailable(f"Artifacts directory {artifacts_dir} does not exist; compile first")
    names: List[str] = []
    for root, dirs, files in os.walk(artifacts_dir):
        dirs[:] = sorted(d for d in dirs if d != "build-info")
        for fname in sorted(files):
            if not fname.endswith(".json") or fname.endswith(".dbg.json"):
                continue
            data = load_json(os.path.join(root, fname))
            if isinstance(data, dict) and "sourceName" in data and "contractName" in data:
                names.append(f"{data['sourceName']}:{data['contractName']}")
    return names

def read_build_info(artifacts_dir: str, full_name: str) -> Dict[str, Any]:
    source, name = full_name.rsplit(":", 1)
    dbg_path = os.path.join(artifacts_dir, source, f"{name}.dbg.json")
    if not os.path.isfile(dbg_path):
        raise NotAvailable(f"Cannot get buildInfo from {full_name}: {dbg_path} is missing")
    dbg = load_json(dbg_path)
    build_info = dbg.get("buildInfo") if isinstance(dbg, dict) else None
    if not build_info:
        raise MalformedInput(f"{dbg_path} does not point at a build-info file")
    path = os.path.normpath(os.path.join(os.path.dirname(dbg_path), build_info))
    if not os.path.isfile(path):
        raise NotAvailable(f"Cannot get buildInfo from {full_name}: {path} is missing")
    return load_json(path)

def compile_project(command: str) -> None:
    res = subprocess.run(command, shell=True, capture_output=True, text=True)
    if res.returncode != 0:
        raise click.ClickException(f"`{command}` failed:\n{res.stderr.strip()}")

# ----------------------- presentation -----------------------

def render_layout(layout: List[TypeReference], indent: int = 0, hex_slots: bool = False) -> List[str]:
    lines: List[str] = []
    for node in layout:
        padding = " " * indent + ("" if indent == 0 else "- ")
        if node.slot is not None:
            slot = slot_hex(node.slot) if hex_slots else str(node.slot)
            where = f"[{slot}:{node.offset}]"
        elif node.id is not None:
            where = f"[{node.id}]"
        else:
            where = ""
        lines.append(
            f"{padding}{click.style(node.name, fg='yellow')} {where}"
            f"[{click.style(node.type_name, fg='bright_magenta')}]"
        )
        if node.sub_type is not None:
            lines.extend(render_layout(node.sub_type, indent + 2, hex_slots))
    return lines

def layout_to_json(layout: List[TypeReference]) -> List[Dict[str, Any]]:
    def with_hex(d: Dict[str, Any]) -> Dict[str, Any]:
        if "slot" in d:
            d["slot_hex"] = slot_hex(d["slot"])
        for child in d.get("sub_type", []):
            with_hex(child)
        return d
    return [with_hex(node.to_dict()) for node in layout]

# ----------------------- CLI -----------------------

@click.group(context_settings=dict(help_option_names=["-h", "--help"], auto_envvar_prefix="LAYOUTLENS"))
def cli():
    """layoutlens: Print the storage layout of compiled Solidity contracts."""
    pass

@cli.command("print")
@click.argument("contract_name")
@click.option("--artifacts", type=click.Path(file_okay=False), default="artifacts", show_default=True,
              help="Hardhat artifacts directory.")
@click.option("--build-info", type=click.Path(exists=True, dir_okay=False), default=None,
              help="Read this build-info / solc output file instead of the artifacts.")
@click.option("--mode", type=click.Choice(["auto", "ast", "layout"]), default="auto", show_default=True,
              help="ast: type shape only; layout: compiler storageLayout with slots.")
@click.option("--max-depth", type=click.IntRange(min=1, max=MAX_DEPTH_CEILING), default=MAX_DEPTH,
              show_default=True, help="Give up on types nested deeper than this.")
@click.option("--compile/--no-compile", "compile_", default=False, help="Compile before reading artifacts.")
@click.option("--compile-command", default="npx hardhat compile --quiet", show_default=True)
@click.option("--json", "json_out", type=click.Path(writable=True), default=None, help="Write JSON layout.")
@click.option("--raw", is_flag=True, help="Print JSON instead of the tree.")
@click.option("--hex", "hex_slots", is_flag=True, help="Show slots as 32-byte words.")
def print_cmd(contract_name, artifacts, build_info, mode, max_depth, compile_, compile_command,
              json_out, raw, hex_slots):
    """Print the storage layout of CONTRACT_NAME (bare name or path:Name)."""
    if compile_:
        click.echo(f"compiling: {compile_command}", err=True)
        compile_project(compile_command)

    if build_info:
        artifact = load_json(build_info)
    else:
        if ":" not in contract_name:
            contract_name = get_full_name(contract_name, fully_qualified_names(artifacts))
        artifact = read_build_info(artifacts, contract_name)

    source, full_name = select_source(artifact, contract_name, mode)
    layout = layout_of(source, full_name, max_depth)

    if json_out:
        with open(json_out, "w", encoding="utf-8") as f:
            json.dump(layout_to_json(layout), f, indent=2)
        click.echo(f"Wrote JSON: {json_out}", err=True)

    if raw:
        click.echo(json.dumps(layout_to_json(layout), indent=2))
        return
    click.echo(f"layout of {click.style(full_name, fg='bright_green')}:")
    for line in render_layout(layout, hex_slots=hex_slots):
        click.echo(line)

@cli.command("names")
@click.option("--artifacts", type=click.Path(file_okay=False), default="artifacts", show_default=True)
@click.option("--build-info", type=click.Path(exists=True, dir_okay=False), default=None)
def names_cmd(artifacts, build_info):
    """List fully-qualified contract names."""
    if build_info:
        names = sorted(open_source(load_json(build_info)).contracts)
    else:
        names = fully_qualified_names(artifacts)
    for name in names:
        click.echo(name)

@cli.command("explain")
def explain_cmd():
    """Print a short guide to reading the output."""
    msg = """Reading a layout:

• name [slot:offset][type]
    layout mode: slot/offset come from the compiler's storageLayout.
    Struct members show slots relative to the start of the struct.

• name [id][type]
    ast mode: only the type shape is known, id is the AST node id.
    Slots are not computed.

• Children (indented, "- "):
    struct       its members, in declaration order
    T[N] / T[]   the shape of ONE element (struct members, or nothing
                 for elementary T); length is shown in JSON output
    mapping      the shape of the value; key type is in JSON key_type
    nested       a single "[]" (array) or "[key]" (mapping) child

• Contract-typed fields, enums and constants:
    contract references are not expanded; constant and immutable
    variables occupy no storage and are left out.
"""
    click.echo(msg)

def main():
    cli()

if __name__ == "__main__":
    main()
