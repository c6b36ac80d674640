# Convert between SVD file and internalized data structure.
# (C) 2026 the stm32map contributors

import copy
import re
from pathlib import Path
from xml.parsers.expat import ExpatError

import xmltodict
from ruamel.yaml import YAML

from ..errors import (
    DuplicateRegisterError,
    FieldOverlapError,
    ParseError,
    RegisterOverlapError,
    SvdLookupError,
)
from ..reg import BITBAND_BASE, BITBAND_END

ACCESS_MODES = ('read-only', 'write-only', 'read-write')
REGISTER_SIZES = (8, 16, 32)

_ACCESS_ALIASES = {
    'read-only': 'read-only',
    'write-only': 'write-only',
    'read-write': 'read-write',
    'writeonce': 'write-only',
    'read-writeonce': 'read-write',
}


def _safe_int(s, base=0):
    """Parse integer string, handling leading zeros that Python 3 int(base=0) rejects."""
    if isinstance(s, int):
        return s
    try:
        return int(s, base=base)
    except ValueError:
        # Strip leading zeros from bare decimal values (e.g. '072', '00000010')
        return int(s.lstrip('0') or '0')


def _text(value):
    """ xmltodict gives None for empty elements and a dict for elements with attributes """
    if isinstance(value, dict):
        value = value.get('#text')
    return value.strip() if isinstance(value, str) else value


def parse(filename):
    """ read a SVD file and return it as a collated device dict """
    try:
        with open(filename, 'rb') as file:
            root = xmltodict.parse(file.read())
    except OSError as ex:
        raise ParseError(filename, ex.strerror or str(ex)) from ex
    except ExpatError as ex:
        raise ParseError(filename, str(ex)) from ex
    if not isinstance(root, dict) or not isinstance(root.get('device'), dict):
        raise ParseError(filename, "no <device> element")
    try:
        return collateDevice(root)
    except (ValueError, KeyError, TypeError) as ex:
        raise ParseError(filename, f"{type(ex).__name__}: {ex}") from ex


def toNumber(tbl:dict, keys:list):
    """ In a table, in-place convert all listed keys into a number. """
    for k in keys:
        if tbl.get(k) is not None:
            v = _text(tbl[k])
            if isinstance(v, str):
                v = re.sub(r'^#', '0b', v.lower())
            tbl[k] = _safe_int(v)


def toAccess(value, default:str):
    """ Normalize an SVD access value to one of ACCESS_MODES. """
    value = _text(value)
    if not value:
        return default
    try:
        return _ACCESS_ALIASES[value.lower()]
    except KeyError:
        raise ValueError(f"unknown access mode '{value}'") from None


def asArray(tbl):
    """ return as an array of tables, even if tbl is only a single table
        if tbl is already an array, return it. If it is associative, wrap it in an array. """
    return tbl if isinstance(tbl, list) else ([ tbl ] if tbl else [])


def findNamedEntry(array:list, name:str):
    """ Go through an array and try to find an entry with the given name.
        If not found, returns None. """
    for e in array:
        if e.get('name') == name:
            return e


def _dimIndices(entry:dict):
    """ The list of index strings for a dim array (dimIndex or 0..dim-1). """
    dim = _safe_int(_text(entry['dim']))
    index = _text(entry.get('dimIndex'))
    if not index:
        return [str(i) for i in range(dim)]
    m = re.fullmatch(r'(\d+)-(\d+)', index)
    if m:
        return [str(i) for i in range(int(m.group(1)), int(m.group(2)) + 1)]
    m = re.fullmatch(r'([A-Z])-([A-Z])', index)
    if m:
        return [chr(c) for c in range(ord(m.group(1)), ord(m.group(2)) + 1)]
    return [i.strip() for i in index.split(',')]


def expandDim(entries:list, offsetKey:str):
    """ Replace every dim array entry by its elements.
        Element n gets the name with '%s' substituted and offsetKey advanced by n*dimIncrement. """
    result = []
    for e in entries:
        if e.get('dim') is None:
            result.append(e)
            continue
        increment = _safe_int(_text(e.get('dimIncrement')) or 0)
        base = _safe_int(_text(e[offsetKey]) or 0)
        for n, index in enumerate(_dimIndices(e)):
            item = copy.deepcopy(e)
            for k in ('dim', 'dimIncrement', 'dimIndex'):
                item.pop(k, None)
            item['name'] = _text(e['name']).replace('[%s]', index).replace('%s', index)
            item[offsetKey] = base + n * increment
            result.append(item)
    return result


def collateFields(fields:dict, regAccess:str):
    """ Go through the register and collate the fields into an array
        The bit ranges are converted to bitOffset/bitWidth style for uniformity
        The list of fields is returned sorted according to bitOffset. """
    flds = []
    for f in expandDim(asArray((fields or {}).get('field')), 'bitOffset'):
        if f.get('bitRange'):
            m = re.match(r'\[([^:]+):([^\]]+)\]', _text(f['bitRange']))
            f['msb'], f['lsb'] = m.group(1,2)
        if f.get('msb') is not None and f.get('lsb') is not None:
            f['bitOffset'] = _safe_int(_text(f['lsb']))
            f['bitWidth'] = _safe_int(_text(f['msb'])) - f['bitOffset'] + 1
        toNumber(f, [ "bitOffset", "bitWidth" ])
        field = {
            'name': _text(f['name']),
            'bitOffset': f['bitOffset'],
            'bitWidth': f.get('bitWidth') or 1,
            'access': toAccess(f.get('access'), regAccess),
        }
        if _text(f.get('description')):
            field['description'] = ' '.join(_text(f['description']).split())
        flds.append(field)
    flds.sort(key=lambda x: (x['bitOffset'], x['name']))
    return flds


def _collateRegister(r:dict, defaults:dict, prefix:str='', offset:int=0):
    toNumber(r, [ "addressOffset", "size", "resetValue" ])
    reg = {
        'name': prefix + _text(r['name']),
        'addressOffset': offset + r['addressOffset'],
        'size': r.get('size') or defaults['size'],
        'access': toAccess(r.get('access'), defaults['access']),
        'resetValue': r['resetValue'] if r.get('resetValue') is not None else defaults['resetValue'],
    }
    if _text(r.get('description')):
        reg['description'] = ' '.join(_text(r['description']).split())
    for k in ('alternateRegister', 'alternateGroup'):
        if _text(r.get(k)):
            reg[k] = (prefix if k == 'alternateRegister' else '') + _text(r[k])
    reg['fields'] = collateFields(r.get('fields'), reg['access'])
    return reg


def collateRegisters(cluster:dict, defaults:dict, prefix:str='', offset:int=0):
    """ Go through the cluster and collate the registers.
        Nested clusters are flattened: their registers get the cluster name as a
        prefix and the cluster offset added.
        The register list is returned sorted for increasing addresses. """
    regs = []
    for r in expandDim(asArray((cluster or {}).get('register')), 'addressOffset'):
        regs.append(_collateRegister(r, defaults, prefix, offset))
    for c in expandDim(asArray((cluster or {}).get('cluster')), 'addressOffset'):
        toNumber(c, [ "addressOffset" ])
        name = _text(c['name']).replace('[%s]', '').replace('%s', '')
        regs.extend(collateRegisters(c, defaults, f"{prefix}{name}_", offset + c['addressOffset']))
    regs.sort(key=lambda x: (x['addressOffset'], x['name']))
    return regs


def collateInterrupts(peripheral:dict):
    """ Go through the interrupts of this peripheral and collate them into an array. """
    ints = []
    for i in asArray(peripheral.get('interrupt')):
        entry = { 'name': _text(i['name']), 'value': _safe_int(_text(i['value'])) }
        if _text(i.get('description')):
            entry['description'] = ' '.join(_text(i['description']).split())
        ints.append(entry)
    return ints


def collatePeripherals(device:dict, defaults:dict):
    """ go through the device and collate the peripherals into an array
        derived peripherals get a copy of their base's registers. """
    raw = asArray((device.get('peripherals') or {}).get('peripheral'))
    pers = []
    for p in raw:
        toNumber(p, [ "baseAddress", "size", "resetValue" ])
        pdefaults = {
            'size': p.get('size') or defaults['size'],
            'access': toAccess(p.get('access'), defaults['access']),
            'resetValue': p['resetValue'] if p.get('resetValue') is not None else defaults['resetValue'],
        }
        per = { 'name': _text(p['name']), 'baseAddress': p['baseAddress'] }
        if p.get('@derivedFrom'):
            per['derivedFrom'] = p['@derivedFrom']
        if _text(p.get('description')):
            per['description'] = ' '.join(_text(p['description']).split())
        if _text(p.get('groupName')):
            per['groupName'] = _text(p['groupName'])
        per['registers'] = collateRegisters(p.get('registers'), pdefaults)
        per['interrupts'] = collateInterrupts(p)
        pers.append(per)

    for per in pers:
        base = per
        seen = set()
        while 'derivedFrom' in base and not base['registers']:
            if base['name'] in seen:
                raise ValueError(f"circular derivedFrom at peripheral '{per['name']}'")
            seen.add(base['name'])
            base = findNamedEntry(pers, base['derivedFrom'])
            if base is None:
                raise KeyError(f"peripheral '{per['name']}' derives from unknown peripheral")
        if base is not per:
            per['registers'] = copy.deepcopy(base['registers'])
            if 'description' not in per and 'description' in base:
                per['description'] = base['description']

    pers.sort(key=lambda x: (x['baseAddress'], x['name']))
    return pers


def collateDevice(root:dict):
    """ go through the device and collate all its information into a new dict """
    device = root['device']
    toNumber(device, [ "width", "size", "resetValue" ])
    defaults = {
        'size': device.get('size') or 32,
        'access': toAccess(device.get('access'), 'read-write'),
        'resetValue': device.get('resetValue') or 0,
    }
    dev = { 'name': _text(device.get('name')) or '' }
    for k in ('version', 'description'):
        if _text(device.get(k)):
            dev[k] = ' '.join(_text(device[k]).split())
    if isinstance(device.get('cpu'), dict):
        dev['cpu'] = { k: _text(v) for k, v in device['cpu'].items() }
    dev['peripherals'] = collatePeripherals(device, defaults)
    return dev


# ============================================================================
# Lookup and mutation
# ============================================================================

def peripheral(dev:dict, name:str):
    per = findNamedEntry(dev['peripherals'], name)
    if per is None:
        raise SvdLookupError('peripheral', name, f"device {dev.get('name') or '?'}")
    return per


def register(per:dict, name:str):
    reg = findNamedEntry(per['registers'], name)
    if reg is None:
        raise SvdLookupError('register', name, f"peripheral {per['name']}")
    return reg


def field(reg:dict, name:str):
    fld = findNamedEntry(reg['fields'], name)
    if fld is None:
        raise SvdLookupError('field', name, f"register {reg['name']}")
    return fld


def add_register(per:dict, reg:dict):
    """ Insert a register keeping the address order. """
    if findNamedEntry(per['registers'], reg['name']) is not None:
        raise DuplicateRegisterError(f"peripheral {per['name']} already has a register '{reg['name']}'")
    per['registers'].append(reg)
    per['registers'].sort(key=lambda x: (x['addressOffset'], x['name']))


def add_field(reg:dict, fld:dict):
    """ Insert a field keeping the bit order. """
    if findNamedEntry(reg['fields'], fld['name']) is not None:
        raise FieldOverlapError(f"register {reg['name']} already has a field '{fld['name']}'")
    reg['fields'].append(fld)
    reg['fields'].sort(key=lambda x: (x['bitOffset'], x['name']))


def remove_register(per:dict, name:str):
    reg = register(per, name)
    per['registers'].remove(reg)
    return reg


def remove_field(reg:dict, name:str):
    fld = field(reg, name)
    reg['fields'].remove(fld)
    return fld


# ============================================================================
# Invariants
# ============================================================================

def register_address(per:dict, reg:dict):
    return per['baseAddress'] + reg['addressOffset']


def register_bitband(per:dict, reg:dict):
    """ True if the register lies in the peripheral bit-band region. """
    return BITBAND_BASE <= register_address(per, reg) < BITBAND_END


def field_kind(per:dict, reg:dict, fld:dict):
    """ Access-band classifier: 'bits', 'bitband' or 'bit'. """
    if fld['bitWidth'] > 1:
        return 'bits'
    return 'bitband' if register_bitband(per, reg) else 'bit'


def fields_overlap(a:dict, b:dict):
    return a['bitOffset'] < b['bitOffset'] + b['bitWidth'] and b['bitOffset'] < a['bitOffset'] + a['bitWidth']


def registers_alias(a:dict, b:dict):
    """ Registers documented as aliases may share addresses. """
    if a.get('alternateRegister') == b['name'] or b.get('alternateRegister') == a['name']:
        return True
    return bool(a.get('alternateGroup')) and a.get('alternateGroup') == b.get('alternateGroup')


def registers_overlap(a:dict, b:dict):
    a0, b0 = a['addressOffset'], b['addressOffset']
    return a0 < b0 + b['size'] // 8 and b0 < a0 + a['size'] // 8


def check_register(per:dict, reg:dict):
    """ Fields must be pairwise disjoint and within the register width. """
    where = f"{per['name']}.{reg['name']}"
    if reg['size'] not in REGISTER_SIZES:
        raise FieldOverlapError(f"{where}: unsupported register size {reg['size']}")
    names = set()
    for i, f in enumerate(reg['fields']):
        if f['name'] in names:
            raise FieldOverlapError(f"{where}: duplicate field '{f['name']}'")
        names.add(f['name'])
        if f['bitWidth'] < 1 or f['bitOffset'] < 0 or f['bitOffset'] + f['bitWidth'] > reg['size']:
            raise FieldOverlapError(
                f"{where}.{f['name']}: bits {f['bitOffset']}+{f['bitWidth']} outside [0, {reg['size']})")
        for g in reg['fields'][i + 1:]:
            if fields_overlap(f, g):
                raise FieldOverlapError(f"{where}: fields '{f['name']}' and '{g['name']}' overlap")


def check_peripheral(per:dict):
    """ Check all registers, and that no two registers share bytes unless aliased. """
    names = set()
    for i, r in enumerate(per['registers']):
        if r['name'] in names:
            raise DuplicateRegisterError(f"peripheral {per['name']} has duplicate register '{r['name']}'")
        names.add(r['name'])
        check_register(per, r)
        for s in per['registers'][i + 1:]:
            if registers_overlap(r, s) and not registers_alias(r, s):
                raise RegisterOverlapError(
                    f"{per['name']}: registers '{r['name']}' (offset {r['addressOffset']:#x}) and "
                    f"'{s['name']}' (offset {s['addressOffset']:#x}) overlap")


def check_device(dev:dict, exclude=()):
    """ Check the whole model: unique peripheral names and base addresses, and
        every peripheral's registers. Peripherals in exclude are skipped. """
    names, bases = set(), {}
    for per in dev['peripherals']:
        if per['name'] in names:
            raise DuplicateRegisterError(f"duplicate peripheral '{per['name']}'")
        names.add(per['name'])
        if per['name'] in exclude:
            continue
        if per['baseAddress'] in bases:
            raise RegisterOverlapError(
                f"peripherals '{bases[per['baseAddress']]}' and '{per['name']}' share base address {per['baseAddress']:#010x}")
        bases[per['baseAddress']] = per['name']
        check_peripheral(per)


def dumpDevice(device:dict, filename:Path, header:str=None):
    """ write a YAML file for the entire device """
    with open(filename, "w") as file:
        if header:
            file.write(header)
        yaml = YAML()
        yaml.indent(mapping=2, sequence=4, offset=2)
        yaml.dump(device, file)
