import itertools
import json

import pytest


class AstBuilder:
    """Small solc-AST factory; every node gets a fresh id."""

    def __init__(self):
        self._ids = itertools.count(1)

    def _node(self, node_type, **fields):
        node = {"id": next(self._ids), "nodeType": node_type}
        node.update(fields)
        return node

    @staticmethod
    def _desc(identifier, string):
        return {"typeIdentifier": identifier, "typeString": string}

    def elementary(self, name):
        return self._node("ElementaryTypeName", name=name, typeDescriptions=self._desc(f"t_{name}", name))

    def user(self, target):
        if target["nodeType"] == "StructDefinition":
            desc = self._desc(f"t_struct$_{target['name']}_${target['id']}_storage_ptr",
                              f"struct {target['name']}")
        elif target["nodeType"] == "EnumDefinition":
            desc = self._desc(f"t_enum$_{target['name']}_${target['id']}", f"enum {target['name']}")
        else:
            desc = self._desc(f"t_contract$_{target['name']}_${target['id']}",
                              f"contract {target['name']}")
        return self._node("UserDefinedTypeName", referencedDeclaration=target["id"], typeDescriptions=desc)

    def array(self, base, length=None):
        suffix = "dyn" if length is None else str(length)
        string = base["typeDescriptions"]["typeString"] + ("[]" if length is None else f"[{length}]")
        fields = {
            "baseType": base,
            "typeDescriptions": self._desc(f"t_array${base['typeDescriptions']['typeIdentifier']}${suffix}_storage",
                                           string),
        }
        if length is not None:
            fields["length"] = self._node("Literal", kind="number", value=str(length))
        return self._node("ArrayTypeName", **fields)

    def mapping(self, key, value):
        desc = self._desc(
            f"t_mapping${key['typeDescriptions']['typeIdentifier']}_${value['typeDescriptions']['typeIdentifier']}_$",
            f"mapping({key['typeDescriptions']['typeString']} => {value['typeDescriptions']['typeString']})",
        )
        return self._node("Mapping", keyType=key, valueType=value, typeDescriptions=desc)

    def var(self, name, type_node, constant=False, mutability=None):
        return self._node(
            "VariableDeclaration",
            name=name,
            constant=constant,
            mutability=mutability or ("constant" if constant else "mutable"),
            stateVariable=True,
            visibility="internal",
            typeName=type_node,
            typeDescriptions=dict(type_node["typeDescriptions"]),
        )

    def struct(self, name, members):
        return self._node("StructDefinition", name=name, members=members)

    def enum(self, name, values):
        return self._node("EnumDefinition", name=name,
                          members=[self._node("EnumValue", name=v) for v in values])

    def contract(self, name, nodes, bases=()):
        node = self._node("ContractDefinition", name=name, contractKind="contract", nodes=nodes)
        linearized = [node["id"]]
        for base in reversed(list(bases)):
            for base_id in base["linearizedBaseContracts"]:
                if base_id not in linearized:
                    linearized.append(base_id)
        node["linearizedBaseContracts"] = linearized
        return node

    def output(self, units):
        """units: {path: [top-level nodes]} -> solc standard-json output."""
        sources = {}
        for index, (path, nodes) in enumerate(units.items()):
            sources[path] = {
                "id": index,
                "ast": self._node("SourceUnit", absolutePath=path, nodes=nodes),
            }
        return {"sources": sources, "contracts": {}}


@pytest.fixture
def ast():
    return AstBuilder()


@pytest.fixture
def point_output(ast):
    """
    contracts/Shapes.sol:
        contract Base { uint256 x; }
        contract Shapes is Base {
            struct Point { uint256 x; uint256 y; }
            uint256 constant SCALE = 10;
            address owner;
            Point origin;
            Point[5] pts;
            uint256[] queue;
            mapping(address => Point) m;
            mapping(address => uint256) n;
            mapping(address => mapping(address => uint256)) allowance;
            Base parent;
        }
    """
    base = ast.contract("Base", [ast.var("x", ast.elementary("uint256"))])
    point = ast.struct("Point", [ast.var("x", ast.elementary("uint256")),
                                 ast.var("y", ast.elementary("uint256"))])
    shapes = ast.contract("Shapes", [
        point,
        ast.var("SCALE", ast.elementary("uint256"), constant=True),
        ast.var("owner", ast.elementary("address")),
        ast.var("origin", ast.user(point)),
        ast.var("pts", ast.array(ast.user(point), 5)),
        ast.var("queue", ast.array(ast.elementary("uint256"))),
        ast.var("m", ast.mapping(ast.elementary("address"), ast.user(point))),
        ast.var("n", ast.mapping(ast.elementary("address"), ast.elementary("uint256"))),
        ast.var("allowance", ast.mapping(ast.elementary("address"),
                                         ast.mapping(ast.elementary("address"), ast.elementary("uint256")))),
        ast.var("parent", ast.user(base)),
    ], bases=[base])
    return ast.output({"contracts/Shapes.sol": [base, shapes]})


def _entry(label, slot, type_key, offset=0, ast_id=None):
    return {"astId": ast_id, "contract": "contracts/Vault.sol:Vault", "label": label,
            "offset": offset, "slot": str(slot), "type": type_key}


VAULT_TYPES = {
    "t_address": {"encoding": "inplace", "label": "address", "numberOfBytes": "20"},
    "t_bool": {"encoding": "inplace", "label": "bool", "numberOfBytes": "1"},
    "t_uint256": {"encoding": "inplace", "label": "uint256", "numberOfBytes": "32"},
    "t_struct(Point)14_storage": {
        "encoding": "inplace",
        "label": "struct Vault.Point",
        "members": [
            {"astId": 11, "contract": "contracts/Vault.sol:Vault", "label": "x", "offset": 0, "slot": "0",
             "type": "t_uint256"},
            {"astId": 13, "contract": "contracts/Vault.sol:Vault", "label": "y", "offset": 0, "slot": "1",
             "type": "t_uint256"},
        ],
        "numberOfBytes": "64",
    },
    "t_array(t_struct(Point)14_storage)5_storage": {
        "base": "t_struct(Point)14_storage", "encoding": "inplace",
        "label": "struct Vault.Point[5]", "numberOfBytes": "320",
    },
    "t_array(t_uint256)dyn_storage": {
        "base": "t_uint256", "encoding": "dynamic_array", "label": "uint256[]", "numberOfBytes": "32",
    },
    "t_mapping(t_address,t_struct(Point)14_storage)": {
        "encoding": "mapping", "key": "t_address", "label": "mapping(address => struct Vault.Point)",
        "numberOfBytes": "32", "value": "t_struct(Point)14_storage",
    },
    "t_mapping(t_address,t_uint256)": {
        "encoding": "mapping", "key": "t_address", "label": "mapping(address => uint256)",
        "numberOfBytes": "32", "value": "t_uint256",
    },
    "t_mapping(t_address,t_mapping(t_address,t_uint256))": {
        "encoding": "mapping", "key": "t_address",
        "label": "mapping(address => mapping(address => uint256))",
        "numberOfBytes": "32", "value": "t_mapping(t_address,t_uint256)",
    },
    "t_contract(IERC20)30": {"encoding": "inplace", "label": "contract IERC20", "numberOfBytes": "20"},
}


@pytest.fixture
def vault_output():
    """solc output with storageLayout selected, one contract Vault."""
    storage = [
        _entry("owner", 0, "t_address", ast_id=3),
        _entry("paused", 0, "t_bool", offset=20, ast_id=5),
        _entry("pts", 1, "t_array(t_struct(Point)14_storage)5_storage", ast_id=9),
        _entry("m", 11, "t_mapping(t_address,t_struct(Point)14_storage)"),
        _entry("n", 12, "t_mapping(t_address,t_uint256)"),
        _entry("allowance", 13, "t_mapping(t_address,t_mapping(t_address,t_uint256))"),
        _entry("queue", 14, "t_array(t_uint256)dyn_storage"),
        _entry("token", 15, "t_contract(IERC20)30"),
    ]
    return {
        "sources": {"contracts/Vault.sol": {"id": 0}},
        "contracts": {
            "contracts/Vault.sol": {
                "Vault": {"abi": [], "storageLayout": {"storage": storage, "types": dict(VAULT_TYPES)}},
            },
            "contracts/IERC20.sol": {
                "IERC20": {"abi": [], "storageLayout": {"storage": [], "types": None}},
            },
        },
    }


@pytest.fixture
def hardhat_project(tmp_path, vault_output):
    """A Hardhat-style artifacts/ tree whose Vault points at one build-info file."""
    artifacts = tmp_path / "artifacts"
    build_info_dir = artifacts / "build-info"
    build_info_dir.mkdir(parents=True)
    (build_info_dir / "abc123.json").write_text(
        json.dumps({"_format": "hh-sol-build-info-1", "solcVersion": "0.8.20", "output": vault_output}),
        encoding="utf-8",
    )
    for source, name in (("contracts/Vault.sol", "Vault"), ("contracts/IERC20.sol", "IERC20")):
        folder = artifacts / source
        folder.mkdir(parents=True)
        (folder / f"{name}.json").write_text(
            json.dumps({"_format": "hh-sol-artifact-1", "contractName": name, "sourceName": source, "abi": []}),
            encoding="utf-8",
        )
        (folder / f"{name}.dbg.json").write_text(
            json.dumps({"_format": "hh-sol-dbg-1", "buildInfo": "../../build-info/abc123.json"}),
            encoding="utf-8",
        )
    return artifacts
