"""
Register definitions and ownership tokens.

`RegDef` and `FieldDef` describe registers the same way for the generated
`svd_regs` modules and for expanded ownership schemas.

A token is the capability to access one register (or the owned bits of a
shared register) of one peripheral instance. Token classes are generated per
instance, so the tokens of GPIOA and GPIOB have the same layout but are never
the same type. Tokens are handed out through a `Registry`, which guarantees a
single owner for every exclusive register and every bit of a shared one.
Handles are move-only: `move()` returns the new handle and retires the old.
A field token can be taken out of its register on its own. Releasing a token
set retires every handle that came from it.

Hardware is reached through a bus. `MemoryBus` simulates one, including the
Cortex-M bit-band alias region that lets owners of different bits of a shared
register update their bits without a read-modify-write of the whole word.
"""

import threading
from collections import namedtuple

from .errors import AccessError, OwnershipError, SvdLookupError, TokenMovedError

FieldDef = namedtuple('FieldDef', 'name offset width access kind bound', defaults=(None,))
FieldDef.__doc__ = """A field. `bound` is the concrete SVD name when it differs from `name`."""

RegDef = namedtuple('RegDef', 'peripheral name address size access reset fields bound shared',
                    defaults=(None, False))
RegDef.__doc__ = """A register at its absolute address. `bound` is the concrete SVD
register name when `name` is a generic schema name."""

Interrupt = namedtuple('Interrupt', 'number name peripherals')

# Cortex-M peripheral bit-band region and its alias
BITBAND_BASE = 0x40000000
BITBAND_END = 0x40100000
BITBAND_ALIAS = 0x42000000
BITBAND_ALIAS_END = 0x44000000


def field_kind(address:int, width:int):
    """ Access-band classifier: 'bits' for a multi-bit field, 'bitband' for a
        single bit of a register in the bit-band region, 'bit' otherwise. """
    if width > 1:
        return 'bits'
    return 'bitband' if BITBAND_BASE <= address < BITBAND_END else 'bit'


def bitband_alias(address:int, bit:int):
    """ The alias word address for one bit of a bit-band region register. """
    if not BITBAND_BASE <= address < BITBAND_END:
        raise ValueError(f"address {address:#010x} is outside the bit-band region")
    word = address & ~3
    bit += (address - word) * 8
    return BITBAND_ALIAS + (word - BITBAND_BASE) * 32 + bit * 4


def _mask(width:int):
    return (1 << width) - 1


def _readable(access:str):
    return access != 'write-only'


def _writable(access:str):
    return access != 'read-only'


# ============================================================================
# Bus
# ============================================================================

class Bus:
    """Interface to the register space. Addresses are absolute."""

    def read(self, address:int, size:int=32) -> int:
        raise NotImplementedError

    def write(self, address:int, value:int, size:int=32):
        raise NotImplementedError

    def set_bit(self, address:int, bit:int):
        raise NotImplementedError

    def clear_bit(self, address:int, bit:int):
        raise NotImplementedError

    def modify(self, address:int, mask:int, value:int, size:int=32):
        """ Replace the bits in mask with those of value. """
        self.write(address, (self.read(address, size) & ~mask) | (value & mask), size)


class MemoryBus(Bus):
    """A simulated register space backed by a dict.

    Writes to the bit-band alias region set or clear the aliased bit. Single-bit
    updates and masked modifications are done under a lock, so concurrent
    owners of different bits of one word never lose each other's updates.
    """

    def __init__(self, initial:dict=None):
        self._words = dict(initial or {})
        self._lock = threading.Lock()

    def read(self, address:int, size:int=32):
        if BITBAND_ALIAS <= address < BITBAND_ALIAS_END:
            word, bit = self._alias_target(address)
            return (self.read(word) >> bit) & 1
        with self._lock:
            return self._words.get(address, 0) & _mask(size)

    def write(self, address:int, value:int, size:int=32):
        if BITBAND_ALIAS <= address < BITBAND_ALIAS_END:
            word, bit = self._alias_target(address)
            self._update(word, bit, value & 1)
            return
        with self._lock:
            self._words[address] = value & _mask(size)

    def set_bit(self, address:int, bit:int):
        self._bitband_write(address, bit, 1)

    def clear_bit(self, address:int, bit:int):
        self._bitband_write(address, bit, 0)

    def modify(self, address:int, mask:int, value:int, size:int=32):
        with self._lock:
            word = self._words.get(address, 0)
            self._words[address] = ((word & ~mask) | (value & mask)) & _mask(size)

    def _bitband_write(self, address:int, bit:int, value:int):
        if BITBAND_BASE <= address < BITBAND_END:
            self.write(bitband_alias(address, bit), value)
        else:
            self._update(address, bit, value)

    def _update(self, address:int, bit:int, value:int):
        with self._lock:
            word = self._words.get(address, 0)
            self._words[address] = (word | (1 << bit)) if value else (word & ~(1 << bit))

    @staticmethod
    def _alias_target(address:int):
        offset = (address - BITBAND_ALIAS) // 4
        return BITBAND_BASE + (offset // 32) * 4, offset % 32


# ============================================================================
# Registry
# ============================================================================

class Registry:
    """Single-owner registry of register claims.

    An exclusive register is claimed by address, a shared register bit by
    (address, bit). An exclusive claim and a bit claim on the same address
    conflict as well.
    """

    def __init__(self):
        self._claims = {}
        self._lock = threading.Lock()

    def _keys(self, regdef:RegDef):
        if not regdef.shared:
            return [(regdef.address, None)]
        return [(regdef.address, bit)
                for f in regdef.fields for bit in range(f.offset, f.offset + f.width)]

    def _conflict(self, key):
        address, bit = key
        for (a, b), owner in self._claims.items():
            if a == address and (bit is None or b is None or b == bit):
                return (a, b), owner

    def claim(self, owner:str, regdefs):
        """ Claim all registers (or owned bits) in regdefs for owner, or none of them. """
        keys = [k for r in regdefs for k in self._keys(r)]
        with self._lock:
            taken = {}
            for key in keys:
                hit = (key, owner) if key in taken else self._conflict(key)
                if hit:
                    (address, bit), other = hit
                    what = f"{address:#010x}" if bit is None else f"{address:#010x} bit {bit}"
                    raise OwnershipError(f"{owner}: register {what} is already owned by {other}")
                taken[key] = owner
            self._claims.update(taken)

    def release(self, owner:str):
        with self._lock:
            for key in [k for k, o in self._claims.items() if o == owner]:
                del self._claims[key]

    def owner(self, address:int, bit:int=None):
        with self._lock:
            hit = self._conflict((address, bit))
            return hit[1] if hit else None


# ============================================================================
# Tokens
# ============================================================================

class Lease:
    """The claims a token set holds. Every token extracted from the set, moved
    out or not, is usable only while its lease is active."""

    __slots__ = ('owner', 'active')

    def __init__(self, owner:str):
        self.owner = owner
        self.active = True


class Token:
    """Base class of move-only handles."""

    __slots__ = ('_valid', '_bus', '_lease')

    def __init__(self, bus:Bus, lease:Lease):
        self._valid = True
        self._bus = bus
        self._lease = lease

    def _check(self):
        if not self._lease.active:
            raise TokenMovedError(f"{type(self).__name__}: the claims of {self._lease.owner} were released")
        if not self._valid:
            raise TokenMovedError(f"{type(self).__name__} was moved")

    @property
    def valid(self):
        return self._valid and self._lease.active

    def move(self):
        """ Hand the capability to a new handle. This handle can't be used afterwards. """
        self._check()
        self._valid = False
        return type(self)(self._bus, self._lease)


class FieldToken(Token):
    """Access to one field of a register. It lives in its register token
    until taken out with `RegToken.take_field`."""

    __slots__ = ()
    regdef = None
    fielddef = None

    def read(self):
        self._check()
        f, r = self.fielddef, self.regdef
        if not (_readable(f.access) and _readable(r.access)):
            raise AccessError(f"{type(self).__name__} is {f.access}")
        return (self._bus.read(r.address, r.size) >> f.offset) & _mask(f.width)

    def write(self, value:int):
        self._check()
        f, r = self.fielddef, self.regdef
        if not (_writable(f.access) and _writable(r.access)):
            raise AccessError(f"{type(self).__name__} is {f.access}")
        if value < 0 or value > _mask(f.width):
            raise ValueError(f"{type(self).__name__}: {value} doesn't fit in {f.width} bits")
        if r.shared:
            for i in range(f.width):
                if (value >> i) & 1:
                    self._bus.set_bit(r.address, f.offset + i)
                else:
                    self._bus.clear_bit(r.address, f.offset + i)
        elif not _readable(r.access):
            # write-only registers read as zero, so other fields are written as 0
            self._bus.write(r.address, value << f.offset, r.size)
        else:
            self._bus.modify(r.address, _mask(f.width) << f.offset, value << f.offset, r.size)

    def set(self):
        self.write(_mask(self.fielddef.width))

    def clear(self):
        self.write(0)


class RegToken(Token):
    """Access to one register of one peripheral instance.

    Writing the whole register needs every field: a shared register, or one
    with fields taken out, is only written field by field.
    """

    __slots__ = ('_fields',)
    instance = None
    regdef = None
    field_classes = ()

    def __init__(self, bus:Bus, lease:Lease, fields=None):
        super().__init__(bus, lease)
        self._fields = {cls.fielddef.name: cls(bus, lease) for cls in self.field_classes
                        if fields is None or cls.fielddef.name in fields}

    def __getattr__(self, name):
        if name.startswith('_'):
            raise AttributeError(name)
        try:
            return self._fields[name]
        except KeyError:
            raise AttributeError(f"{type(self).__name__} has no field '{name}'") from None

    def __dir__(self):
        return list(super().__dir__()) + list(self._fields)

    @property
    def address(self):
        return self.regdef.address

    @property
    def fields(self):
        return dict(self._fields)

    @property
    def whole(self):
        return not self.regdef.shared and len(self._fields) == len(self.field_classes)

    def move(self):
        """ Hand the register and the fields it still holds to a new handle. """
        self._check()
        self._retire()
        return type(self)(self._bus, self._lease, list(self._fields))

    def take_field(self, name:str):
        """ Move a field token out of the register, e.g. to give it to a driver. """
        self._check()
        if name not in self._fields:
            raise AttributeError(f"{type(self).__name__} has no field '{name}'")
        return self._fields.pop(name).move()

    def _retire(self):
        self._valid = False
        for f in self._fields.values():
            f._valid = False

    def read(self):
        self._check()
        if not _readable(self.regdef.access):
            raise AccessError(f"{type(self).__name__} is {self.regdef.access}")
        return self._bus.read(self.regdef.address, self.regdef.size)

    def write(self, value:int):
        self._check()
        if not self.whole:
            raise OwnershipError(f"{type(self).__name__}: not all fields are owned, only owned fields can be written")
        if not _writable(self.regdef.access):
            raise AccessError(f"{type(self).__name__} is {self.regdef.access}")
        self._bus.write(self.regdef.address, value, self.regdef.size)

    def modify(self, **values):
        """ Set several owned fields in one write. """
        self._check()
        if self.regdef.shared:
            for name, value in values.items():
                getattr(self, name).write(value)
            return
        mask = word = 0
        for name, value in values.items():
            f = getattr(self, name).fielddef
            if value < 0 or value > _mask(f.width):
                raise ValueError(f"{type(self).__name__}.{name}: {value} doesn't fit in {f.width} bits")
            mask |= _mask(f.width) << f.offset
            word |= value << f.offset
        if not _writable(self.regdef.access):
            raise AccessError(f"{type(self).__name__} is {self.regdef.access}")
        if _readable(self.regdef.access):
            self._bus.modify(self.regdef.address, mask, word, self.regdef.size)
        else:
            self._bus.write(self.regdef.address, word, self.regdef.size)


_token_classes = {}


def _class_name(*parts):
    return '_'.join(p[:1].upper() + p[1:] for p in parts)


def token_class(instance:str, regdef:RegDef):
    """ The token type for a register of an instance. Equal arguments give the same type. """
    key = (instance, regdef)
    cls = _token_classes.get(key)
    if cls is None:
        field_classes = tuple(
            type(_class_name(instance, regdef.name, f.name), (FieldToken,),
                 {'__slots__': (), 'regdef': regdef, 'fielddef': f})
            for f in regdef.fields)
        cls = type(_class_name(instance, regdef.name), (RegToken,),
                   {'__slots__': (), 'instance': instance, 'regdef': regdef,
                    'field_classes': field_classes})
        _token_classes[key] = cls
    return cls


# ============================================================================
# Peripheral token sets
# ============================================================================

class Periph:
    """The tokens extracted for one peripheral instance, by register name."""

    def __init__(self, name:str, regdefs, registry:Registry, bus:Bus):
        regdefs = tuple(regdefs)
        registry.claim(name, regdefs)
        self.name = name
        self._registry = registry
        self._lease = Lease(name)
        self._tokens = {r.name: token_class(name, r)(bus, self._lease) for r in regdefs}

    def __getattr__(self, name):
        tokens = self.__dict__.get('_tokens', {})
        if name in tokens:
            return tokens[name]
        raise AttributeError(f"{self.__dict__.get('name')} has no register '{name}'")

    def __iter__(self):
        return iter(self._tokens.values())

    def __len__(self):
        return len(self._tokens)

    def __contains__(self, name):
        return name in self._tokens

    def move(self, register:str):
        """ Move a register token out of the set, e.g. to give it to a driver. """
        if register not in self._tokens:
            raise AttributeError(f"{self.name} has no register '{register}'")
        return self._tokens.pop(register).move()

    def release(self):
        """ Give all claims back to the registry. Every token extracted from
            this set becomes unusable, including those moved out of it. """
        self._lease.active = False
        self._registry.release(self.name)


def take(schema, instance:str, mcu, registry:Registry, bus:Bus):
    """ Extract the token set of a schema instance on a variant. """
    from .periph.schema import expand
    return Periph(instance, expand(schema, instance, mcu).registers, registry, bus)


class RegIndex:
    """Extracts token sets from the generated register index.

    index is the INDEX mapping of svd_reg_index, registers the RegDefs of the
    svd_regs pools, schema_owned the peripherals only a schema may hand out.
    schema_shared maps the address of a register that schema instances share
    to the bits they own; extracted tokens for it hold only the other fields.
    """

    def __init__(self, index:dict, registers, schema_owned=(), schema_shared=None):
        self.index = index
        self.schema_owned = frozenset(schema_owned)
        self.schema_shared = {a: frozenset(bits) for a, bits in (schema_shared or {}).items()}
        self._regdefs = {(r.peripheral, r.name): r for r in registers}

    @classmethod
    def from_modules(cls, index_module, *regs_modules):
        registers = [r for m in regs_modules for r in m.REGISTERS]
        return cls(index_module.INDEX, registers,
                   getattr(index_module, 'SCHEMA_OWNED', ()),
                   getattr(index_module, 'SCHEMA_SHARED', None))

    def _unshared(self, regdef:RegDef):
        bits = self.schema_shared.get(regdef.address)
        if bits is None:
            return regdef
        fields = tuple(f for f in regdef.fields
                       if bits.isdisjoint(range(f.offset, f.offset + f.width)))
        return regdef._replace(fields=fields, shared=True)

    def regdefs(self, peripheral:str):
        if peripheral not in self.index:
            raise SvdLookupError('peripheral', peripheral, 'register index')
        result = []
        for name in self.index[peripheral]:
            if (peripheral, name) not in self._regdefs:
                raise SvdLookupError('register', name, f"loaded register pools for {peripheral}")
            result.append(self._unshared(self._regdefs[(peripheral, name)]))
        return result

    def extract(self, peripheral:str, registry:Registry, bus:Bus):
        if peripheral in self.schema_owned:
            raise OwnershipError(f"{peripheral} is handed out by its ownership schema")
        return Periph(peripheral, self.regdefs(peripheral), registry, bus)
