from pathlib import Path

from pydantic import TypeAdapter, ValidationError

from core.exceptions import ContractConfigError
from indexer.entities import ContractDescriptor

_descriptors = TypeAdapter(list[ContractDescriptor])


def load_contracts(path: str) -> list[ContractDescriptor]:
    """
    Load contract descriptors from a JSON file.

    Relative ``abiPath`` entries are resolved against the file's directory.

    Parameters
    ----------
    path : str
        JSON file holding an array of descriptors

    Returns
    -------
    list[ContractDescriptor]
        Validated descriptors

    Raises
    ------
    ContractConfigError
        If the file is missing, invalid or lists a contract twice
    """
    contracts_path = Path(path)
    try:
        descriptors = _descriptors.validate_json(contracts_path.read_bytes())
    except OSError as e:
        raise ContractConfigError(f"Cannot read contracts file {path}: {e}") from e
    except ValidationError as e:
        raise ContractConfigError(f"Invalid contracts file {path}: {e}") from e

    resolved = []
    seen = set()
    for descriptor in descriptors:
        if descriptor.address in seen:
            raise ContractConfigError(f"Contract {descriptor.address} is listed twice in {path}")
        seen.add(descriptor.address)

        if descriptor.abi_path and not Path(descriptor.abi_path).is_absolute():
            descriptor = descriptor.model_copy(
                update={"abi_path": str(contracts_path.parent / descriptor.abi_path)}
            )
        resolved.append(descriptor)
    return resolved
