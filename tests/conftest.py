import copy
import importlib.util
from pathlib import Path

import pytest

from stm32map.tools import svd

DATA_DIR = Path(__file__).resolve().parent / 'data'
TEST_SVD = DATA_DIR / 'TEST.svd'
F102_SVD = DATA_DIR / 'STM32F102.svd'

_parsed = {}


def parsed(path):
    """ Parse an SVD file once per session; every caller gets its own copy. """
    if path not in _parsed:
        _parsed[path] = svd.parse(path)
    return copy.deepcopy(_parsed[path])


def load_module(path, name=None):
    """ Import a generated module from its file. """
    path = Path(path)
    spec = importlib.util.spec_from_file_location(name or f"generated_{path.stem}", path)
    module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)
    return module


@pytest.fixture
def test_dev():
    return parsed(TEST_SVD)


@pytest.fixture
def f102_dev():
    return parsed(F102_SVD)


@pytest.fixture
def svd_dir():
    return DATA_DIR


@pytest.fixture
def gpio_dev():
    """ A small hand-written model with two GPIO ports and a timer. """
    def register(name, offset, fields, size=32, access='read-write'):
        return {
            'name': name, 'addressOffset': offset, 'size': size, 'access': access, 'resetValue': 0,
            'fields': [{'name': n, 'bitOffset': o, 'bitWidth': w, 'access': access} for n, o, w in fields],
        }
    moder = [(f'MODER{i}', 2 * i, 2) for i in range(16)]
    otyper = [(f'OT{i}', i, 1) for i in range(16)]
    return {
        'name': 'GPIODEV',
        'peripherals': [
            {'name': 'TIM2', 'baseAddress': 0x40000000, 'interrupts': [{'name': 'TIM2', 'value': 28}],
             'registers': [
                 register('CR1', 0x00, [('CEN', 0, 1), ('DIR', 4, 1)], size=16),
                 register('CNT', 0x24, [('CNT_L', 0, 16), ('CNT_H', 16, 16)]),
             ]},
            {'name': 'GPIOA', 'baseAddress': 0x48000000, 'interrupts': [],
             'registers': [register('MODER', 0x00, moder), register('OTYPER', 0x04, otyper)]},
            {'name': 'GPIOB', 'baseAddress': 0x48000400, 'interrupts': [],
             'registers': [register('MODER', 0x00, moder)]},
        ],
    }
