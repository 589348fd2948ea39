import os
import pytest

from circulation import CirculationDesk
from library import Library


@pytest.fixture
def lib(tmp_path, request):
    # Unique database file per test
    db_file = str(tmp_path / f"test_{request.node.name}.db")
    lib = Library(db_file=db_file)
    yield lib
    lib.close()
    if os.path.exists(db_file):
        os.remove(db_file)


@pytest.fixture
def desk(lib):
    return CirculationDesk(lib)


@pytest.fixture
def item(lib):
    return lib.add_catalog_item("The Left Hand of Darkness", "Ursula K. Le Guin")


@pytest.fixture
def student(lib):
    return lib.add_member("S-001", "Sam Student", "Student")


@pytest.fixture
def faculty(lib):
    return lib.add_member("F-001", "Fran Faculty", "Faculty")
