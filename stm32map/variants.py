"""
Supported MCU variants and the selector for the active one.

The set of variants is closed: every conditional branch of an ownership
schema and every patch program is keyed by a member of `Mcu`.
"""

import enum
import os

from .errors import UnsupportedVariantError

ENV_VAR = 'STM32_MCU'


class Mcu(enum.Enum):
    STM32F100 = 'stm32f100'
    STM32F101 = 'stm32f101'
    STM32F102 = 'stm32f102'
    STM32F103 = 'stm32f103'
    STM32F107 = 'stm32f107'
    STM32F401 = 'stm32f401'
    STM32F405 = 'stm32f405'
    STM32F407 = 'stm32f407'
    STM32F410 = 'stm32f410'
    STM32F411 = 'stm32f411'
    STM32F412 = 'stm32f412'
    STM32F413 = 'stm32f413'
    STM32F427 = 'stm32f427'
    STM32F429 = 'stm32f429'
    STM32F446 = 'stm32f446'
    STM32F469 = 'stm32f469'
    STM32L4X1 = 'stm32l4x1'
    STM32L4X2 = 'stm32l4x2'
    STM32L4X3 = 'stm32l4x3'
    STM32L4X5 = 'stm32l4x5'
    STM32L4X6 = 'stm32l4x6'
    STM32L4R5 = 'stm32l4r5'
    STM32L4R7 = 'stm32l4r7'
    STM32L4R9 = 'stm32l4r9'
    STM32L4S5 = 'stm32l4s5'
    STM32L4S7 = 'stm32l4s7'
    STM32L4S9 = 'stm32l4s9'

    def __str__(self):
        return self.value

    @property
    def family(self) -> str:
        return next(f for f, members in FAMILIES.items() if self in members)


FAMILIES = {
    'stm32f1': frozenset([
        Mcu.STM32F100, Mcu.STM32F101, Mcu.STM32F102, Mcu.STM32F103, Mcu.STM32F107,
    ]),
    'stm32f4': frozenset([
        Mcu.STM32F401, Mcu.STM32F405, Mcu.STM32F407, Mcu.STM32F410, Mcu.STM32F411,
        Mcu.STM32F412, Mcu.STM32F413, Mcu.STM32F427, Mcu.STM32F429, Mcu.STM32F446,
        Mcu.STM32F469,
    ]),
    'stm32l4': frozenset([
        Mcu.STM32L4X1, Mcu.STM32L4X2, Mcu.STM32L4X3, Mcu.STM32L4X5, Mcu.STM32L4X6,
    ]),
    'stm32l4plus': frozenset([
        Mcu.STM32L4R5, Mcu.STM32L4R7, Mcu.STM32L4R9, Mcu.STM32L4S5, Mcu.STM32L4S7,
        Mcu.STM32L4S9,
    ]),
}


def select(key) -> Mcu:
    """Resolve a variant key to an `Mcu`. No I/O happens here."""
    if isinstance(key, Mcu):
        return key
    try:
        return Mcu(key)
    except ValueError:
        raise UnsupportedVariantError(key) from None


def select_from_env(environ=None) -> Mcu:
    """Resolve the variant named by the STM32_MCU environment variable."""
    environ = os.environ if environ is None else environ
    key = environ.get(ENV_VAR)
    if not key:
        raise UnsupportedVariantError(f"<{ENV_VAR} not set>")
    return select(key)


def expand_guard(names) -> frozenset:
    """Turn a list of variant keys and/or family names into a set of `Mcu`.

    An absent guard (None) selects every variant.
    """
    if names is None:
        return frozenset(Mcu)
    result = set()
    for name in names:
        if name in FAMILIES:
            result |= FAMILIES[name]
        else:
            result.add(select(name))
    return frozenset(result)
