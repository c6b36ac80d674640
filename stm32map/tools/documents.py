# Loading and validation of the YAML documents that drive stm32map.
# The JSON Schemas are kept as YAML next to the data they describe.

from functools import lru_cache
from pathlib import Path

from jsonschema import Draft202012Validator
from ruamel.yaml import YAML
from ruamel.yaml.error import YAMLError

from ..errors import ConfigError

SCHEMA_DIR = Path(__file__).resolve().parent.parent / 'data' / 'schemas'


def load_yaml(filename, error=ConfigError):
    """ read a YAML document into plain dicts and lists """
    try:
        with open(filename, 'r', encoding='utf-8') as file:
            return YAML(typ='safe').load(file)
    except OSError as ex:
        raise error(f"Can't read {filename}: {ex.strerror or ex}") from ex
    except YAMLError as ex:
        raise error(f"{filename} is not valid YAML: {ex}") from ex


@lru_cache(maxsize=None)
def validator(schema_name:str):
    schema = load_yaml(SCHEMA_DIR / schema_name)
    Draft202012Validator.check_schema(schema)
    return Draft202012Validator(schema)


def validate(doc, schema_name:str, source, error=ConfigError):
    """ Check doc against one of the packaged schemas.
        All violations are reported at once, each with its location. """
    errors = sorted(validator(schema_name).iter_errors(doc), key=lambda e: [str(p) for p in e.path])
    if errors:
        lines = [f"{source} failed validation:"]
        for e in errors:
            loc = "/".join(str(p) for p in e.path) or "(root)"
            lines.append(f"   - at {loc}: {e.message}")
        raise error("\n".join(lines))
    return doc
