# Generate the register, index and interrupt modules for a patched device
#
# The output is Python source that only depends on stm32map.reg. Everything is
# emitted in address order (registers by absolute address, fields by bit
# offset) so that the same device always gives the same bytes.

from pathlib import Path
from string import Template

from ..errors import EmissionIOError
from ..tools import svd

# Core peripherals that belong to the CPU, not the device
EXCLUDE = ('FPU', 'FPU_CPACR', 'ITM', 'MPU', 'NVIC', 'SCB', 'STK', 'TPIU')

REGS_FILE = 'svd_regs.py'
INDEX_FILE = 'svd_reg_index.py'
INTERRUPTS_FILE = 'svd_interrupts.py'


class ModFormatter:
    def __init__(self, **keywords):
        self.prefixTemplate     = Template(keywords.get('prefix'    , '# File was generated, do not edit!\n# $device: $what\n'))
        self.regsTemplate       = Template(keywords.get('regs'      , '$prefix\nfrom stm32map.reg import FieldDef, RegDef\n\nREGISTERS = ($regs\n)\n'))
        self.registerTemplate   = Template(keywords.get('register'  , "\n    RegDef('$peripheral', '$name', $address, $size, '$access', $reset, ($fields\n    )),"))
        self.fieldTemplate      = Template(keywords.get('field'     , "\n        FieldDef('$name', $offset, $width, '$access', '$kind'),"))
        self.indexTemplate      = Template(keywords.get('index'     , '$prefix\nINDEX = {$entries\n}\n\nSCHEMA_OWNED = ($owned)\n\nSCHEMA_SHARED = {$shared\n}\n'))
        self.sharedTemplate     = Template(keywords.get('shared'    , '\n    $address: ($bits),'))
        self.indexEntryTemplate = Template(keywords.get('indexEntry', "\n    '$peripheral': ($names),"))
        self.intsTemplate       = Template(keywords.get('ints'      , '$prefix\nfrom stm32map.reg import Interrupt\n\nINTERRUPTS = ($ints\n)\n$consts'))
        self.intTemplate        = Template(keywords.get('int'       , "\n    Interrupt($number, '$name', ($peripherals)),"))
        self.constTemplate      = Template(keywords.get('const'     , '\n$name = $number'))

    @staticmethod
    def formatNames(names):
        """ Python tuple body for a list of names; a single name gets the trailing comma. """
        return ''.join(f"'{n}', " for n in names).rstrip(' ')

    def formatFieldList(self, per:dict, reg:dict):
        txt = ''
        for f in sorted(reg['fields'], key=lambda f: (f['bitOffset'], f['name'])):
            txt += self.fieldTemplate.substitute(
                name=f['name'], offset=f['bitOffset'], width=f['bitWidth'],
                access=f['access'], kind=svd.field_kind(per, reg, f))
        return txt

    def formatRegisterList(self, peripherals:list):
        regs = []
        for per in peripherals:
            for reg in per['registers']:
                regs.append((svd.register_address(per, reg), per['name'], reg['name'], per, reg))
        regs.sort(key=lambda r: r[:3])
        txt = ''
        for address, _, _, per, reg in regs:
            txt += self.registerTemplate.substitute(
                peripheral=per['name'], name=reg['name'], address=f"{address:#010x}",
                size=reg['size'], access=reg['access'], reset=f"{reg['resetValue']:#x}",
                fields=self.formatFieldList(per, reg))
        return txt

    def formatRegs(self, device:str, peripherals:list, pool_number:int, pool_size:int):
        prefix = self.prefixTemplate.substitute(device=device, what=f"registers, pool {pool_number} of {pool_size}")
        return self.regsTemplate.substitute(prefix=prefix, regs=self.formatRegisterList(peripherals))

    def formatIndex(self, device:str, peripherals:list, schema_owned, schema_shared):
        prefix = self.prefixTemplate.substitute(device=device, what='register index')
        entries = ''
        for per in peripherals:
            names = [r['name'] for r in sorted(per['registers'], key=lambda r: (r['addressOffset'], r['name']))]
            entries += self.indexEntryTemplate.substitute(peripheral=per['name'], names=self.formatNames(names))
        present = {p['name'] for p in peripherals}
        owned = self.formatNames(sorted(n for n in schema_owned if n in present))
        shared = ''
        for address in sorted(schema_shared):
            bits = ''.join(f"{b}, " for b in sorted(schema_shared[address])).rstrip(' ')
            shared += self.sharedTemplate.substitute(address=f"{address:#010x}", bits=bits)
        return self.indexTemplate.substitute(prefix=prefix, entries=entries, owned=owned, shared=shared)

    def formatInterrupts(self, device:str, interrupts:list):
        prefix = self.prefixTemplate.substitute(device=device, what='interrupts')
        ints = ''
        consts = ''
        for number, name, owners in interrupts:
            ints += self.intTemplate.substitute(number=number, name=name, peripherals=self.formatNames(owners))
            consts += self.constTemplate.substitute(name=name, number=number)
        return self.intsTemplate.substitute(prefix=prefix, ints=ints, consts=consts + '\n' if consts else '')


def emitted_peripherals(dev:dict, exclude=EXCLUDE):
    """ The peripherals that appear in the artifacts, by ascending base address. """
    return sorted((p for p in dev['peripherals'] if p['name'] not in exclude),
                  key=lambda p: (p['baseAddress'], p['name']))


def pool(peripherals:list, pool_number:int, pool_size:int):
    """ The contiguous chunk of peripherals for pool pool_number (1-based) of pool_size. """
    if pool_size < 1 or not 1 <= pool_number <= pool_size:
        raise ValueError(f"pool {pool_number} of {pool_size} doesn't exist")
    n = len(peripherals)
    return peripherals[(pool_number - 1) * n // pool_size : pool_number * n // pool_size]


def collect_interrupts(dev:dict, exclude=EXCLUDE):
    """ One entry (number, name, owners) per vector, ordered by number.
        Owners listed in exclude are dropped, and so are vectors left without one.
        A vector listed under several names keeps the one of its lowest-addressed owner. """
    vectors = {}
    for per in emitted_peripherals(dev, exclude):
        for i in per['interrupts']:
            vectors.setdefault(i['value'], (i['name'], set()))[1].add(per['name'])
    return [(number, vectors[number][0], sorted(vectors[number][1])) for number in sorted(vectors)]


def _write(path:Path, text:str):
    try:
        with open(path, 'w', encoding='utf-8', newline='\n') as file:
            file.write(text)
    except OSError as ex:
        raise EmissionIOError(path, ex) from ex


def generate_regs(dev:dict, out_dir, pool_number:int=1, pool_size:int=1, fmt:ModFormatter=None):
    """ Write svd_regs.py for one pool of the device's peripherals. Returns the path. """
    svd.check_device(dev, exclude=EXCLUDE)
    fmt = fmt or ModFormatter()
    peripherals = pool(emitted_peripherals(dev), pool_number, pool_size)
    path = Path(out_dir) / REGS_FILE
    _write(path, fmt.formatRegs(dev['name'], peripherals, pool_number, pool_size))
    return path


def generate_index(dev:dict, out_dir, schema_owned=(), schema_shared=None, fmt:ModFormatter=None):
    """ Write svd_reg_index.py. Returns the path.
        schema_owned names the peripherals only the ownership schema hands out,
        schema_shared maps shared register addresses to the bits schema instances own. """
    svd.check_device(dev, exclude=EXCLUDE)
    fmt = fmt or ModFormatter()
    path = Path(out_dir) / INDEX_FILE
    _write(path, fmt.formatIndex(dev['name'], emitted_peripherals(dev), schema_owned, schema_shared or {}))
    return path


def generate_interrupts(dev:dict, out_dir, fmt:ModFormatter=None):
    """ Write svd_interrupts.py. Returns the path. """
    svd.check_device(dev, exclude=EXCLUDE)
    fmt = fmt or ModFormatter()
    path = Path(out_dir) / INTERRUPTS_FILE
    _write(path, fmt.formatInterrupts(dev['name'], collect_interrupts(dev)))
    return path
