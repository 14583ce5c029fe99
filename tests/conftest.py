import importlib
import os
from datetime import date
from types import SimpleNamespace

import pytest


@pytest.fixture
def catalog(tmp_path):
    # Point the app at a per-test database before the module builds its engine
    db_file = tmp_path / "catalog.db"
    os.environ["LIBRARY_DATABASE_URL"] = f"sqlite:///{db_file}"

    import local_library
    module = importlib.reload(local_library)
    module.app.config.update(TESTING=True, WTF_CSRF_ENABLED=False)
    with module.app.app_context():
        module.db.create_all()
    try:
        yield module
    finally:
        os.environ.pop("LIBRARY_DATABASE_URL", None)
        with module.app.app_context():
            module.db.session.remove()
            module.db.engine.dispose()


@pytest.fixture
def client(catalog):
    return catalog.app.test_client()


@pytest.fixture
def seeded(catalog):
    """One author with one book (tagged Fantasy) and one available copy, plus an unused author and genre."""
    with catalog.app.app_context():
        author = catalog.Author(first_name="Ursula", family_name="LeGuin",
                                date_of_birth=date(1929, 10, 21), date_of_death=date(2018, 1, 22))
        idle_author = catalog.Author(first_name="Jane", family_name="Austen")
        fantasy = catalog.Genre(name="Fantasy")
        poetry = catalog.Genre(name="French Poetry")
        book = catalog.Book(title="A Wizard of Earthsea", summary="A young wizard on Gont.",
                            isbn="9780547773742", author=author, genres=[fantasy])
        copy = catalog.BookInstance(book=book, imprint="Parnassus, 1968", status="Available")
        catalog.db.session.add_all([author, idle_author, fantasy, poetry, book, copy])
        catalog.db.session.commit()
        return SimpleNamespace(
            author=author.id,
            idle_author=idle_author.id,
            genre=fantasy.id,
            idle_genre=poetry.id,
            book=book.id,
            copy=copy.id,
        )
