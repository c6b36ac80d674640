# Functions to correct the device data structure.
# (C) 2026 the stm32map contributors
#
# Each operation checks its preconditions before it touches the model and
# raises if they don't hold. An edit that would leave the model unchanged is
# an error too: the vendor defect it was written for is no longer there.

import copy

from . import svd
from ..errors import (
    DuplicatePeripheralError,
    DuplicateRegisterError,
    FieldOverlapError,
    RegisterOverlapError,
    StalePatchError,
)


def _where(peripheral, reg_name=None, field_name=None):
    return '.'.join(n for n in (peripheral, reg_name, field_name) if n)


def normalize_register(reg:dict):
    """Fill in defaults for a register given in a patch descriptor."""
    result = {
        'name': reg['name'],
        'addressOffset': reg['addressOffset'],
        'size': reg.get('size', 32),
        'access': svd.toAccess(reg.get('access'), 'read-write'),
        'resetValue': reg.get('resetValue', 0),
    }
    for k in ('description', 'alternateRegister', 'alternateGroup'):
        if reg.get(k):
            result[k] = reg[k]
    fields = svd.expandDim(list(reg.get('fields', [])), 'bitOffset')
    result['fields'] = sorted((normalize_field(f, result['access']) for f in fields),
                              key=lambda f: (f['bitOffset'], f['name']))
    return result


def normalize_field(fld:dict, reg_access:str='read-write'):
    """Fill in defaults for a field given in a patch descriptor."""
    result = {
        'name': fld['name'],
        'bitOffset': fld['bitOffset'],
        'bitWidth': fld.get('bitWidth', 1),
        'access': svd.toAccess(fld.get('access'), reg_access),
    }
    if fld.get('description'):
        result['description'] = fld['description']
    return result


def _insert_register(per:dict, reg:dict, op:str):
    where = _where(per['name'], reg['name'])
    if svd.findNamedEntry(per['registers'], reg['name']) is not None:
        raise DuplicateRegisterError(f"{op}: {where} already exists")
    for other in per['registers']:
        if svd.registers_overlap(reg, other) and not svd.registers_alias(reg, other):
            raise RegisterOverlapError(
                f"{op}: {where} at offset {reg['addressOffset']:#x} overlaps {other['name']}")
    svd.check_register(per, reg)
    svd.add_register(per, reg)


def _insert_field(per:dict, reg:dict, fld:dict, op:str):
    where = _where(per['name'], reg['name'], fld['name'])
    if svd.findNamedEntry(reg['fields'], fld['name']) is not None:
        raise FieldOverlapError(f"{op}: {where} already exists")
    _check_field_fits(reg, fld, fld['name'], op, where)
    svd.add_field(reg, fld)


def _check_field_fits(reg:dict, fld:dict, skip:str, op:str, where:str):
    """ The candidate field must lie within the register and not overlap any
        sibling except the one named skip (the field being edited). """
    if fld['bitWidth'] < 1 or fld['bitOffset'] < 0 or fld['bitOffset'] + fld['bitWidth'] > reg['size']:
        raise FieldOverlapError(
            f"{op}: {where} bits {fld['bitOffset']}+{fld['bitWidth']} outside [0, {reg['size']})")
    for other in reg['fields']:
        if other['name'] != skip and svd.fields_overlap(fld, other):
            raise FieldOverlapError(f"{op}: {where} overlaps field {other['name']}")


def copy_register(dev:dict, from_peripheral:str, to_peripheral:str, reg_name:str):
    """Clone a register, including its fields, into another peripheral."""
    src = svd.register(svd.peripheral(dev, from_peripheral), reg_name)
    target = svd.peripheral(dev, to_peripheral)
    _insert_register(target, copy.deepcopy(src), 'copy_register')


def copy_field(dev:dict, from_peripheral:str, to_peripheral:str, reg_name:str, field_name:str):
    """Clone a field into the same-named register of another peripheral."""
    src = svd.field(svd.register(svd.peripheral(dev, from_peripheral), reg_name), field_name)
    per = svd.peripheral(dev, to_peripheral)
    _insert_field(per, svd.register(per, reg_name), copy.deepcopy(src), 'copy_field')


def add_register(dev:dict, peripheral:str, reg:dict):
    _insert_register(svd.peripheral(dev, peripheral), normalize_register(reg), 'add_register')


def add_field(dev:dict, peripheral:str, reg_name:str, fld:dict):
    per = svd.peripheral(dev, peripheral)
    reg = svd.register(per, reg_name)
    _insert_field(per, reg, normalize_field(fld, reg['access']), 'add_field')


def remove_register(dev:dict, peripheral:str, reg_name:str):
    svd.remove_register(svd.peripheral(dev, peripheral), reg_name)


def remove_field(dev:dict, peripheral:str, reg_name:str, field_name:str):
    svd.remove_field(svd.register(svd.peripheral(dev, peripheral), reg_name), field_name)


def rename_register(dev:dict, peripheral:str, reg_name:str, new_name:str):
    per = svd.peripheral(dev, peripheral)
    reg = svd.register(per, reg_name)
    where = _where(peripheral, reg_name)
    if new_name == reg_name:
        raise StalePatchError(f"rename_register: {where} is already named '{new_name}'")
    if svd.findNamedEntry(per['registers'], new_name) is not None:
        raise DuplicateRegisterError(f"rename_register: {_where(peripheral, new_name)} already exists")
    reg['name'] = new_name
    for other in per['registers']:
        if other.get('alternateRegister') == reg_name:
            other['alternateRegister'] = new_name
    per['registers'].sort(key=lambda x: (x['addressOffset'], x['name']))


def rename_field(dev:dict, peripheral:str, reg_name:str, field_name:str, new_name:str):
    reg = svd.register(svd.peripheral(dev, peripheral), reg_name)
    fld = svd.field(reg, field_name)
    where = _where(peripheral, reg_name, field_name)
    if new_name == field_name:
        raise StalePatchError(f"rename_field: {where} is already named '{new_name}'")
    if svd.findNamedEntry(reg['fields'], new_name) is not None:
        raise FieldOverlapError(f"rename_field: {_where(peripheral, reg_name, new_name)} already exists")
    fld['name'] = new_name
    reg['fields'].sort(key=lambda x: (x['bitOffset'], x['name']))


def resize_register(dev:dict, peripheral:str, reg_name:str, size:int):
    """Correct a register's bit width, e.g. a 32-bit timer listed as 16-bit."""
    per = svd.peripheral(dev, peripheral)
    reg = svd.register(per, reg_name)
    where = _where(peripheral, reg_name)
    if size not in svd.REGISTER_SIZES:
        raise FieldOverlapError(f"resize_register: {where}: unsupported size {size}")
    if reg['size'] == size:
        raise StalePatchError(f"resize_register: {where} is already {size} bits wide")
    candidate = dict(reg, size=size)
    for f in reg['fields']:
        if f['bitOffset'] + f['bitWidth'] > size:
            raise FieldOverlapError(f"resize_register: {where}: field {f['name']} doesn't fit in {size} bits")
    for other in per['registers']:
        if other is not reg and svd.registers_overlap(candidate, other) and not svd.registers_alias(candidate, other):
            raise RegisterOverlapError(f"resize_register: {where} would overlap {other['name']}")
    reg['size'] = size


def resize_field(dev:dict, peripheral:str, reg_name:str, field_name:str, bit_width:int):
    """Correct a field's bit width. The register's fields are re-validated."""
    reg = svd.register(svd.peripheral(dev, peripheral), reg_name)
    fld = svd.field(reg, field_name)
    where = _where(peripheral, reg_name, field_name)
    if fld['bitWidth'] == bit_width:
        raise StalePatchError(f"resize_field: {where} is already {bit_width} bits wide")
    _check_field_fits(reg, dict(fld, bitWidth=bit_width), field_name, 'resize_field', where)
    fld['bitWidth'] = bit_width


def reposition_field(dev:dict, peripheral:str, reg_name:str, field_name:str, bit_offset:int):
    """Correct a field's bit offset. The register's fields are re-validated."""
    reg = svd.register(svd.peripheral(dev, peripheral), reg_name)
    fld = svd.field(reg, field_name)
    where = _where(peripheral, reg_name, field_name)
    if fld['bitOffset'] == bit_offset:
        raise StalePatchError(f"reposition_field: {where} is already at bit {bit_offset}")
    _check_field_fits(reg, dict(fld, bitOffset=bit_offset), field_name, 'reposition_field', where)
    fld['bitOffset'] = bit_offset
    reg['fields'].sort(key=lambda x: (x['bitOffset'], x['name']))


def derive_peripheral(dev:dict, from_peripheral:str, name:str, base_address:int):
    """Add a peripheral the SVD leaves out, as a copy of a compatible one."""
    src = svd.peripheral(dev, from_peripheral)
    if svd.findNamedEntry(dev['peripherals'], name) is not None:
        raise DuplicatePeripheralError(f"derive_peripheral: peripheral {name} already exists")
    for other in dev['peripherals']:
        if other['baseAddress'] == base_address:
            raise DuplicatePeripheralError(
                f"derive_peripheral: {name} base address {base_address:#010x} is taken by {other['name']}")
    per = {
        'name': name,
        'baseAddress': base_address,
        'derivedFrom': from_peripheral,
        'registers': copy.deepcopy(src['registers']),
        'interrupts': [],
    }
    dev['peripherals'].append(per)
    dev['peripherals'].sort(key=lambda x: (x['baseAddress'], x['name']))


def add_interrupt(dev:dict, peripheral:str, name:str, value:int):
    per = svd.peripheral(dev, peripheral)
    for other in dev['peripherals']:
        for i in other['interrupts']:
            if i['name'] == name and other is per:
                raise DuplicatePeripheralError(f"add_interrupt: {peripheral} already has interrupt {name}")
            if i['value'] == value and i['name'] != name:
                raise DuplicatePeripheralError(
                    f"add_interrupt: vector {value} is already {other['name']}.{i['name']}")
    per['interrupts'].append({ 'name': name, 'value': value })
    per['interrupts'].sort(key=lambda x: x['value'])


def set_access(dev:dict, peripheral:str, reg_name:str, access:str, field_name:str=None):
    """Correct the access mode of a register, or of one of its fields."""
    reg = svd.register(svd.peripheral(dev, peripheral), reg_name)
    target = svd.field(reg, field_name) if field_name else reg
    access = svd.toAccess(access, None)
    if target['access'] == access:
        raise StalePatchError(
            f"set_access: {_where(peripheral, reg_name, field_name)} is already {access}")
    target['access'] = access
