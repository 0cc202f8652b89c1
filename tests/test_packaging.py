import re
from importlib.metadata import PackageNotFoundError, requires

import pytest


def declared_requirements() -> set[str]:
    try:
        reqs = requires("pos-rotation") or []
    except PackageNotFoundError:
        pytest.skip("pos-rotation is not installed")
    return {re.split(r"[\s<>=!~;\[]", r, maxsplit=1)[0].lower() for r in reqs}


@pytest.mark.parametrize("distribution", [
    "requests", "flask", "werkzeug", "hvac", "boto3", "botocore", "rich", "sqlalchemy", "cryptography",
])
def test_directly_imported_libraries_are_declared(distribution):
    assert distribution in declared_requirements()
