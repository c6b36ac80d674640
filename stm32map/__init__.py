"""
stm32map: patched STM32 SVD models, generated register modules, and ownership
tokens for peripherals described by static schemas.
"""

__version__ = '0.1.0'
