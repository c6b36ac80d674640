"""
Static ownership schemas.

A schema describes one peripheral class (e.g. the GPIO port) as data: the
generic register layout, how it maps to concrete registers on each family,
and which instances exist on which variant. Expanding an instance for a
variant gives its `TokenSet`, the registers whose tokens it hands out.

Registers of a shared block (RCC bus enables and resets) are owned bit by bit:
each instance owns only the fields bound to it, so the tokens of different
instances never cover the same bit.
"""

from collections import namedtuple
from pathlib import Path

from ..errors import OwnershipConflictError, SchemaError, SvdLookupError, UnsupportedVariantError
from ..reg import FieldDef, RegDef, field_kind
from ..tools import svd
from ..tools.documents import load_yaml, validate
from ..variants import FAMILIES, Mcu, expand_guard, select

SCHEMA_DIR = Path(__file__).resolve().parent
GPIO_SCHEMA = SCHEMA_DIR / 'gpio.yaml'


class TokenSet(namedtuple('TokenSet', 'instance mcu registers')):
    """The registers of one schema instance on one variant, by address."""

    __slots__ = ()

    @property
    def peripherals(self):
        """ The concrete peripherals the instance owns outright. """
        return tuple(sorted({r.peripheral for r in self.registers if not r.shared}))

    def register(self, name:str):
        for r in self.registers:
            if r.name == name:
                return r
        raise SchemaError(f"{self.instance} has no register '{name}' on {self.mcu}")


def _bind(template:str, port:str):
    return template.replace('%s', port)


class Schema:
    def __init__(self, doc:dict, source=None):
        self.name = doc['name']
        self.description = doc.get('description', '')
        self.blocks = doc['blocks']
        self.maps = doc['maps']
        self.instances = doc['instances']
        self.source = source

    def __repr__(self):
        return f"Schema({self.name!r}, {len(self.instances)} instances)"

    def guard(self, entry:dict, where:str):
        """ The variants an entry applies to. """
        try:
            return expand_guard(entry.get('variants'))
        except UnsupportedVariantError as ex:
            raise SchemaError(f"{self.name}: {where}: {ex}") from ex

    def family_map(self, mcu:Mcu):
        """ The block maps for a variant: its own entry, or its family's. """
        fmap = self.maps.get(mcu.value) or self.maps.get(mcu.family)
        if fmap is None:
            raise SchemaError(f"{self.name}: no map for {mcu}")
        return fmap

    def check(self):
        """ Check the invariants that hold for every variant. """
        for key in self.maps:
            if key not in FAMILIES and key not in {m.value for m in Mcu}:
                raise SchemaError(f"{self.name}: map for unknown variant or family '{key}'")
        for block_name, block in self.blocks.items():
            for reg_name, reg in block['registers'].items():
                self.guard(reg, f"{block_name}.{reg_name}")
        for name, inst in self.instances.items():
            self.guard(inst, name)
            for reg_name in inst.get('omit', ()):
                reg = next((b['registers'][reg_name] for b in self.blocks.values()
                            if reg_name in b['registers']), None)
                if reg is None or not reg.get('optional'):
                    raise SchemaError(f"{self.name}: {name} omits '{reg_name}', which is not an optional register")
        for mcu in Mcu:
            for name in instances(self, mcu):
                expand(self, name, mcu)


def load_schema(path=GPIO_SCHEMA):
    """ Load an ownership schema and check it against every variant. """
    doc = validate(load_yaml(path, SchemaError), 'periph.schema.yaml', path, SchemaError)
    schema = Schema(doc, path)
    schema.check()
    return schema


def instances(schema:Schema, mcu):
    """ The names of the instances that exist on a variant. """
    mcu = select(mcu)
    return [name for name, inst in schema.instances.items() if mcu in schema.guard(inst, name)]


def _expand_fields(schema, block_map, reg, shared, port, index, address, access, where):
    fields = []
    for f in svd.expandDim(list(reg['fields']), 'bitOffset'):
        width = f.get('bitWidth', 1)
        if shared:
            binding = (block_map.get('fields') or {}).get(f['name'])
            if binding is None:
                raise SchemaError(f"{schema.name}: {where}.{f['name']} has no binding")
            offset = binding['bitOffset'] + index
            bound = _bind(binding['name'], port)
        else:
            if f.get('bitOffset') is None:
                raise SchemaError(f"{schema.name}: {where}.{f['name']} has no bitOffset")
            offset = f['bitOffset']
            bound = f['name']
        fields.append(FieldDef(f['name'], offset, width, f.get('access', access),
                               field_kind(address, width), bound))
    fields.sort(key=lambda f: (f.offset, f.name))
    return tuple(fields)


def _check_fields(schema, regdef:RegDef, where:str):
    names = set()
    for i, f in enumerate(regdef.fields):
        if f.name in names:
            raise SchemaError(f"{schema.name}: {where}: duplicate field '{f.name}'")
        names.add(f.name)
        if f.offset + f.width > regdef.size:
            raise SchemaError(f"{schema.name}: {where}.{f.name}: bits {f.offset}+{f.width} outside [0, {regdef.size})")
        for g in regdef.fields[i + 1:]:
            if f.offset < g.offset + g.width and g.offset < f.offset + f.width:
                raise SchemaError(f"{schema.name}: {where}: fields '{f.name}' and '{g.name}' overlap")


def expand(schema:Schema, instance:str, mcu):
    """ The TokenSet of an instance on a variant. """
    mcu = select(mcu)
    inst = schema.instances.get(instance)
    if inst is None:
        raise SchemaError(f"{schema.name} has no instance '{instance}'")
    if mcu not in schema.guard(inst, instance):
        raise SchemaError(f"{instance} doesn't exist on {mcu}")
    fmap = schema.family_map(mcu)
    port, index = inst['port'], inst['index']
    omit = set(inst.get('omit', ()))

    registers = []
    for block_name, block in schema.blocks.items():
        shared = bool(block.get('shared'))
        for reg_name, reg in block['registers'].items():
            where = f"{instance}.{block_name}.{reg_name} on {mcu}"
            if reg_name in omit or mcu not in schema.guard(reg, f"{block_name}.{reg_name}"):
                continue
            block_map = fmap.get(block_name)
            if block_map is None:
                raise SchemaError(f"{schema.name}: {where}: no {block_name} map")
            reg_map = block_map['registers'].get(reg_name)
            if reg_map is None:
                raise SchemaError(f"{schema.name}: {where}: no address")
            base = block_map['baseAddress'] + block_map.get('stride', 0) * index
            address = base + reg_map['addressOffset']
            access = reg.get('access', 'read-write')
            regdef = RegDef(
                peripheral=_bind(block_map['peripheral'], port),
                name=reg_name,
                address=address,
                size=reg.get('size', 32),
                access=access,
                reset=0,
                fields=_expand_fields(schema, block_map, reg, shared, port, index, address, access, where),
                bound=_bind(reg_map.get('name', reg_name), port),
                shared=shared,
            )
            _check_fields(schema, regdef, where)
            registers.append(regdef)
    registers.sort(key=lambda r: (r.address, r.name))
    return TokenSet(instance, mcu, tuple(registers))


def check_ownership(schema:Schema, mcu):
    """ Prove that no two tokens on a variant cover the same register or bit.

    An exclusive register belongs to exactly one instance; a shared register
    is owned bit by bit and may not also be owned outright.
    """
    mcu = select(mcu)
    exclusive, bits = {}, {}
    for name in instances(schema, mcu):
        for r in expand(schema, name, mcu).registers:
            if r.shared:
                for f in r.fields:
                    for bit in range(f.offset, f.offset + f.width):
                        if (r.address, bit) in bits:
                            raise OwnershipConflictError(
                                f"{mcu}: {r.bound} bit {bit} is owned by both {bits[(r.address, bit)]} and {name}")
                        bits[(r.address, bit)] = name
            else:
                if r.address in exclusive:
                    raise OwnershipConflictError(
                        f"{mcu}: register at {r.address:#010x} is owned by both {exclusive[r.address]} and {name}")
                exclusive[r.address] = name
    for address, bit in bits:
        if address in exclusive:
            raise OwnershipConflictError(
                f"{mcu}: register at {address:#010x} is shared by {bits[(address, bit)]} "
                f"and owned outright by {exclusive[address]}")


def check_against_device(token_set:TokenSet, dev:dict):
    """ Check that a token set agrees with the patched device model.

    Every register must exist under its bound name at the same address. An
    exclusive register must have exactly the schema's fields; of a shared
    register, the owned fields must be present with the same position.
    """
    for r in token_set.registers:
        where = f"{token_set.instance}.{r.name} ({r.peripheral}.{r.bound})"
        try:
            per = svd.peripheral(dev, r.peripheral)
            reg = svd.register(per, r.bound or r.name)
        except SvdLookupError as ex:
            raise SchemaError(f"{where}: {ex}") from ex
        address = svd.register_address(per, reg)
        if address != r.address:
            raise SchemaError(f"{where}: schema address {r.address:#010x}, device address {address:#010x}")
        if reg['size'] != r.size:
            raise SchemaError(f"{where}: schema size {r.size}, device size {reg['size']}")
        expected = {(f.bound or f.name, f.offset, f.width) for f in r.fields}
        actual = {(f['name'], f['bitOffset'], f['bitWidth']) for f in reg['fields']}
        missing = sorted(expected - actual)
        extra = sorted(actual - expected) if not r.shared else []
        if missing or extra:
            lines = [f"{where}: fields differ from the device"]
            lines += [f"  schema only: {n} @ {o}+{w}" for n, o, w in missing]
            lines += [f"  device only: {n} @ {o}+{w}" for n, o, w in extra]
            raise SchemaError('\n'.join(lines))
