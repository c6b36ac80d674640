import pytest

from conftest import load_module
from stm32map import cli, pipeline
from stm32map.errors import ConfigError, OwnershipError, ParseError, UnsupportedVariantError
from stm32map.generators import emit
from stm32map.periph.schema import load_schema
from stm32map.reg import MemoryBus, RegIndex, Registry, take
from stm32map.variants import ENV_VAR


@pytest.fixture
def build_env(monkeypatch, tmp_path, svd_dir):
    monkeypatch.setenv(ENV_VAR, 'stm32f102')
    monkeypatch.setenv(pipeline.OUT_DIR_VAR, str(tmp_path))
    monkeypatch.setenv(pipeline.SVD_DIR_VAR, str(svd_dir))
    return tmp_path


def test_svd_deserialize(svd_dir):
    dev = pipeline.svd_deserialize('stm32f102', svd_dir)
    spi2 = next(p for p in dev['peripherals'] if p['name'] == 'SPI2')
    assert [r['name'] for r in spi2['registers']] == ['CR1', 'CRCPR']


def test_unsupported_variant_fails_before_io(tmp_path):
    with pytest.raises(UnsupportedVariantError):
        pipeline.generate_regs(tmp_path, mcu='stm32f999', svd_dir=tmp_path / 'nowhere')
    assert list(tmp_path.iterdir()) == []


def test_unsupported_variant_from_env(monkeypatch, tmp_path):
    monkeypatch.setenv(ENV_VAR, 'stm32h7')
    with pytest.raises(UnsupportedVariantError):
        pipeline.generate_rest(tmp_path)


def test_missing_svd(tmp_path):
    with pytest.raises(ParseError):
        pipeline.generate_regs(tmp_path, mcu='stm32f407', svd_dir=tmp_path)


def test_output_dir_is_required(monkeypatch, svd_dir):
    monkeypatch.delenv(pipeline.OUT_DIR_VAR, raising=False)
    with pytest.raises(ConfigError):
        pipeline.generate_regs(mcu='stm32f102', svd_dir=svd_dir)


def test_schema_owned():
    assert pipeline.schema_owned('stm32f102') == ['GPIOA', 'GPIOB', 'GPIOC', 'GPIOD']
    assert len(pipeline.schema_owned('stm32f429')) == 11


def test_schema_shared():
    assert pipeline.schema_shared('stm32f102') == {
        0x4002100C: (2, 3, 4, 5),
        0x40021018: (2, 3, 4, 5),
    }
    assert pipeline.schema_shared('stm32f429')[0x40023830] == tuple(range(11))


def test_build_from_environment(build_env):
    regs = pipeline.generate_regs()
    index, ints = pipeline.generate_rest()
    assert regs == build_env / emit.REGS_FILE
    assert ints == build_env / emit.INTERRUPTS_FILE
    index = load_module(index)
    assert index.SCHEMA_OWNED == ('GPIOA', 'GPIOB', 'GPIOC', 'GPIOD')
    assert 'NVIC' not in index.INDEX and 'SCB' not in index.INDEX
    assert index.INDEX['SPI2'] == ('CR1', 'CRCPR')
    assert [(i.number, i.name) for i in load_module(ints).INTERRUPTS] == [
        (5, 'RCC'), (35, 'SPI1'), (36, 'SPI2')]


def test_generated_modules_hand_out_tokens(build_env):
    pipeline.generate_regs()
    index_path, _ = pipeline.generate_rest()
    regs = load_module(index_path.parent / emit.REGS_FILE)
    index = RegIndex.from_modules(load_module(index_path), regs)
    registry, bus = Registry(), MemoryBus()
    spi2 = index.extract('SPI2', registry, bus)
    spi2.CRCPR.CRCPOLY.write(0x1021)
    assert bus.read(0x40003810) == 0x1021
    with pytest.raises(OwnershipError) as info:
        index.extract('GPIOB', registry, bus)
    assert 'ownership schema' in str(info.value)


def test_generated_index_shares_rcc_with_the_ports(build_env):
    pipeline.generate_regs()
    index_path, _ = pipeline.generate_rest()
    index = RegIndex.from_modules(load_module(index_path), load_module(index_path.parent / emit.REGS_FILE))
    registry, bus = Registry(), MemoryBus()
    port = take(load_schema(), 'GpioB', 'stm32f102', registry, bus)
    rcc = index.extract('RCC', registry, bus)
    assert sorted(rcc.APB2ENR.fields) == ['AFIOEN', 'SPI1EN']
    port.BUSENR.GPIOEN.set()
    rcc.APB2ENR.SPI1EN.set()
    assert bus.read(0x40021018) == (1 << 12) | (1 << 3)


def test_pools_in_separate_directories(tmp_path, svd_dir):
    names = []
    for number in (1, 2):
        out_dir = tmp_path / f'pool{number}'
        out_dir.mkdir()
        path = pipeline.generate_regs(out_dir, number, 2, mcu='stm32f102', svd_dir=svd_dir)
        names.extend(r.peripheral for r in load_module(path).REGISTERS)
    assert sorted(set(names)) == ['GPIOA', 'GPIOB', 'GPIOC', 'GPIOD', 'RCC', 'SPI1', 'SPI2']


def test_check_schema(svd_dir, capsys):
    token_sets = pipeline.check_schema('stm32f102', svd_dir, verbose=True)
    assert [t.instance for t in token_sets] == ['GpioA', 'GpioB', 'GpioC', 'GpioD']
    assert 'GpioD: 9 registers agree with STM32F102' in capsys.readouterr().out


# ============================================================================
# Command line
# ============================================================================

def test_cli_program(capsys):
    assert cli.main(['program', '--mcu', 'stm32f102']) == 0
    out = capsys.readouterr().out
    assert out.startswith('stm32f102: program stm32f102, 1 fixes, 1 steps')
    assert 'spi.fix_spi2_1: copy_register: SPI1.CRCPR -> SPI2' in out


def test_cli_unsupported_variant(capsys):
    assert cli.main(['program', '--mcu', 'stm32f999']) == 1
    assert capsys.readouterr().err.startswith("Error: Unsupported MCU variant 'stm32f999'")


def test_cli_expand(capsys):
    assert cli.main(['expand', 'GpioB', '--mcu', 'stm32f407']) == 0
    out = capsys.readouterr().out
    assert 'GpioB on stm32f407:' in out
    assert 'RCC.AHB1ENR' in out and 'shared' in out
    assert cli.main(['expand', 'GpioJ', '--mcu', 'stm32f401']) == 1


def test_cli_build(tmp_path, svd_dir, capsys):
    common = ['--mcu', 'stm32f102', '--svd-dir', str(svd_dir), '--out-dir', str(tmp_path)]
    assert cli.main(['regs'] + common) == 0
    assert cli.main(['rest'] + common) == 0
    for name in (emit.REGS_FILE, emit.INDEX_FILE, emit.INTERRUPTS_FILE):
        assert (tmp_path / name).exists()
    assert f"Wrote {tmp_path / emit.INDEX_FILE}" in capsys.readouterr().out


def test_cli_bad_pool(tmp_path, svd_dir, capsys):
    args = ['regs', '--mcu', 'stm32f102', '--svd-dir', str(svd_dir), '--out-dir', str(tmp_path),
            '--pool-number', '3', '--pool-size', '2']
    assert cli.main(args) == 1
    assert "Pool 3 of 2 doesn't exist" in capsys.readouterr().err
    assert not (tmp_path / emit.REGS_FILE).exists()


def test_cli_dump(tmp_path, svd_dir):
    path = tmp_path / 'f102.yaml'
    assert cli.main(['dump', '--mcu', 'stm32f102', '--svd-dir', str(svd_dir), str(path)]) == 0
    assert path.read_text().startswith('# stm32f102 after its patch program\n')


def test_cli_audit(svd_dir, capsys):
    assert cli.main(['audit', '--mcu', 'stm32f102', '--svd-dir', str(svd_dir)]) == 0
    assert 'All 1 fixes of stm32f102 are active' in capsys.readouterr().out


def test_cli_check(svd_dir, capsys):
    assert cli.main(['check', '--mcu', 'stm32f102', '--svd-dir', str(svd_dir)]) == 0
    assert 'Ownership schema checked: 4 instances' in capsys.readouterr().out


def test_cli_missing_svd(tmp_path, capsys):
    assert cli.main(['check', '--mcu', 'stm32f407', '--svd-dir', str(tmp_path)]) == 1
    assert 'STM32F407.svd' in capsys.readouterr().err
