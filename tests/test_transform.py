import pytest

from stm32map.errors import (
    DuplicatePeripheralError,
    DuplicateRegisterError,
    FieldOverlapError,
    RegisterOverlapError,
    StalePatchError,
    SvdLookupError,
)
from stm32map.tools import svd, transform


def _reg(dev, per, name):
    return svd.register(svd.peripheral(dev, per), name)


def test_copy_register(gpio_dev):
    transform.copy_register(gpio_dev, 'GPIOA', 'GPIOB', 'OTYPER')
    copied = _reg(gpio_dev, 'GPIOB', 'OTYPER')
    assert copied == _reg(gpio_dev, 'GPIOA', 'OTYPER')
    copied['fields'][0]['name'] = 'X'
    assert svd.field(_reg(gpio_dev, 'GPIOA', 'OTYPER'), 'OT0')
    assert [r['name'] for r in svd.peripheral(gpio_dev, 'GPIOB')['registers']] == ['MODER', 'OTYPER']


def test_copy_register_that_exists(gpio_dev):
    with pytest.raises(DuplicateRegisterError):
        transform.copy_register(gpio_dev, 'GPIOA', 'GPIOB', 'MODER')


def test_copy_register_from_unknown_peripheral(gpio_dev):
    with pytest.raises(SvdLookupError):
        transform.copy_register(gpio_dev, 'GPIOC', 'GPIOB', 'OTYPER')


def test_copy_field_that_exists(gpio_dev):
    with pytest.raises(FieldOverlapError):
        transform.copy_field(gpio_dev, 'GPIOA', 'GPIOB', 'MODER', 'MODER0')


def test_copy_field(gpio_dev):
    transform.remove_field(gpio_dev, 'GPIOB', 'MODER', 'MODER3')
    transform.copy_field(gpio_dev, 'GPIOA', 'GPIOB', 'MODER', 'MODER3')
    moder = _reg(gpio_dev, 'GPIOB', 'MODER')
    assert [f['name'] for f in moder['fields']][:5] == ['MODER0', 'MODER1', 'MODER2', 'MODER3', 'MODER4']


def test_add_register_expands_arrays(gpio_dev):
    transform.add_register(gpio_dev, 'GPIOA', {
        'name': 'ASCR', 'addressOffset': 0x2C,
        'fields': [{'name': 'ASC%s', 'bitOffset': 0, 'dim': 16, 'dimIncrement': 1}],
    })
    ascr = _reg(gpio_dev, 'GPIOA', 'ASCR')
    assert ascr['size'] == 32 and ascr['access'] == 'read-write' and ascr['resetValue'] == 0
    assert [(f['name'], f['bitOffset']) for f in ascr['fields']][-1] == ('ASC15', 15)
    assert all(f['bitWidth'] == 1 for f in ascr['fields'])


def test_add_register_overlapping(gpio_dev):
    with pytest.raises(RegisterOverlapError):
        transform.add_register(gpio_dev, 'GPIOA', {'name': 'MODER2', 'addressOffset': 0x2, 'size': 16})


def test_add_register_with_bad_fields(gpio_dev):
    with pytest.raises(FieldOverlapError):
        transform.add_register(gpio_dev, 'GPIOA', {
            'name': 'X', 'addressOffset': 0x40, 'size': 16,
            'fields': [{'name': 'A', 'bitOffset': 12, 'bitWidth': 8}],
        })
    assert svd.findNamedEntry(svd.peripheral(gpio_dev, 'GPIOA')['registers'], 'X') is None


def test_add_field(gpio_dev):
    transform.add_field(gpio_dev, 'TIM2', 'CR1', {'name': 'CMS', 'bitOffset': 5, 'bitWidth': 2})
    cr1 = _reg(gpio_dev, 'TIM2', 'CR1')
    assert [f['name'] for f in cr1['fields']] == ['CEN', 'DIR', 'CMS']
    assert svd.field(cr1, 'CMS')['access'] == 'read-write'


@pytest.mark.parametrize('fld', [
    {'name': 'UDIS', 'bitOffset': 4},
    {'name': 'CKD', 'bitOffset': 15, 'bitWidth': 2},
    {'name': 'CEN', 'bitOffset': 9},
])
def test_add_field_rejected(gpio_dev, fld):
    with pytest.raises(FieldOverlapError):
        transform.add_field(gpio_dev, 'TIM2', 'CR1', fld)


def test_remove(gpio_dev):
    transform.remove_register(gpio_dev, 'GPIOA', 'OTYPER')
    with pytest.raises(SvdLookupError):
        transform.remove_register(gpio_dev, 'GPIOA', 'OTYPER')
    transform.remove_field(gpio_dev, 'TIM2', 'CNT', 'CNT_H')
    with pytest.raises(SvdLookupError):
        transform.remove_field(gpio_dev, 'TIM2', 'CNT', 'CNT_H')


def test_rename_register(gpio_dev):
    transform.rename_register(gpio_dev, 'GPIOA', 'OTYPER', 'OTR')
    assert _reg(gpio_dev, 'GPIOA', 'OTR')['addressOffset'] == 4
    with pytest.raises(StalePatchError):
        transform.rename_register(gpio_dev, 'GPIOA', 'OTR', 'OTR')
    with pytest.raises(DuplicateRegisterError):
        transform.rename_register(gpio_dev, 'GPIOA', 'OTR', 'MODER')


def test_rename_field(gpio_dev):
    transform.remove_field(gpio_dev, 'TIM2', 'CNT', 'CNT_H')
    transform.rename_field(gpio_dev, 'TIM2', 'CNT', 'CNT_L', 'CNT')
    assert svd.field(_reg(gpio_dev, 'TIM2', 'CNT'), 'CNT')['bitOffset'] == 0
    with pytest.raises(FieldOverlapError):
        transform.rename_field(gpio_dev, 'TIM2', 'CR1', 'CEN', 'DIR')


def test_resize_register(gpio_dev):
    transform.resize_register(gpio_dev, 'TIM2', 'CR1', 32)
    assert _reg(gpio_dev, 'TIM2', 'CR1')['size'] == 32
    with pytest.raises(StalePatchError):
        transform.resize_register(gpio_dev, 'TIM2', 'CR1', 32)
    with pytest.raises(FieldOverlapError):
        transform.resize_register(gpio_dev, 'TIM2', 'CR1', 24)
    with pytest.raises(FieldOverlapError):
        transform.resize_register(gpio_dev, 'TIM2', 'CNT', 16)


def test_resize_register_into_neighbour(gpio_dev):
    transform.add_register(gpio_dev, 'TIM2', {'name': 'CR2', 'addressOffset': 0x2, 'size': 16})
    with pytest.raises(RegisterOverlapError):
        transform.resize_register(gpio_dev, 'TIM2', 'CR1', 32)


def test_resize_field(gpio_dev):
    with pytest.raises(FieldOverlapError):
        transform.resize_field(gpio_dev, 'TIM2', 'CNT', 'CNT_L', 32)
    transform.remove_field(gpio_dev, 'TIM2', 'CNT', 'CNT_H')
    transform.resize_field(gpio_dev, 'TIM2', 'CNT', 'CNT_L', 32)
    assert svd.field(_reg(gpio_dev, 'TIM2', 'CNT'), 'CNT_L')['bitWidth'] == 32
    with pytest.raises(StalePatchError):
        transform.resize_field(gpio_dev, 'TIM2', 'CNT', 'CNT_L', 32)


def test_reposition_field(gpio_dev):
    transform.reposition_field(gpio_dev, 'TIM2', 'CR1', 'DIR', 8)
    cr1 = _reg(gpio_dev, 'TIM2', 'CR1')
    assert svd.field(cr1, 'DIR')['bitOffset'] == 8
    with pytest.raises(FieldOverlapError):
        transform.reposition_field(gpio_dev, 'TIM2', 'CR1', 'DIR', 0)
    with pytest.raises(StalePatchError):
        transform.reposition_field(gpio_dev, 'TIM2', 'CR1', 'DIR', 8)


def test_derive_peripheral(gpio_dev):
    transform.derive_peripheral(gpio_dev, 'TIM2', 'TIM3', 0x40000400)
    tim3 = svd.peripheral(gpio_dev, 'TIM3')
    assert tim3['registers'] == svd.peripheral(gpio_dev, 'TIM2')['registers']
    assert tim3['interrupts'] == []
    assert [p['name'] for p in gpio_dev['peripherals']][:2] == ['TIM2', 'TIM3']
    with pytest.raises(DuplicatePeripheralError):
        transform.derive_peripheral(gpio_dev, 'TIM2', 'TIM3', 0x40000800)
    with pytest.raises(DuplicatePeripheralError):
        transform.derive_peripheral(gpio_dev, 'TIM2', 'TIM4', 0x48000000)


def test_add_interrupt(gpio_dev):
    transform.derive_peripheral(gpio_dev, 'TIM2', 'TIM3', 0x40000400)
    transform.add_interrupt(gpio_dev, 'TIM3', 'TIM3', 29)
    assert svd.peripheral(gpio_dev, 'TIM3')['interrupts'] == [{'name': 'TIM3', 'value': 29}]
    with pytest.raises(DuplicatePeripheralError):
        transform.add_interrupt(gpio_dev, 'TIM3', 'TIM3', 30)
    with pytest.raises(DuplicatePeripheralError):
        transform.add_interrupt(gpio_dev, 'GPIOA', 'EXTI0', 28)


def test_shared_vector_may_be_added_to_another_peripheral(gpio_dev):
    transform.add_interrupt(gpio_dev, 'GPIOA', 'TIM2', 28)
    assert svd.peripheral(gpio_dev, 'GPIOA')['interrupts'] == [{'name': 'TIM2', 'value': 28}]


def test_set_access(gpio_dev):
    transform.set_access(gpio_dev, 'GPIOA', 'OTYPER', 'read-only')
    assert _reg(gpio_dev, 'GPIOA', 'OTYPER')['access'] == 'read-only'
    transform.set_access(gpio_dev, 'TIM2', 'CR1', 'write-only', 'DIR')
    assert svd.field(_reg(gpio_dev, 'TIM2', 'CR1'), 'DIR')['access'] == 'write-only'
    with pytest.raises(StalePatchError):
        transform.set_access(gpio_dev, 'TIM2', 'CR1', 'read-write', 'CEN')
    with pytest.raises(ValueError):
        transform.set_access(gpio_dev, 'TIM2', 'CR1', 'sometimes')
