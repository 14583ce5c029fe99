def get_author(catalog, author_id):
    with catalog.app.app_context():
        return catalog.db.session.get(catalog.Author, author_id)


def count(catalog, model):
    with catalog.app.app_context():
        return catalog.count_rows(model)


def test_author_list_sorted_by_family_name(client, seeded):
    response = client.get("/catalog/authors")
    assert response.status_code == 200
    html = response.get_data(as_text=True)
    assert html.index("Austen, Jane") < html.index("LeGuin, Ursula")


def test_author_detail_lists_books(client, seeded):
    response = client.get(f"/catalog/author/{seeded.author}")
    assert response.status_code == 200
    html = response.get_data(as_text=True)
    assert "Author: LeGuin, Ursula" in html
    assert "Oct 21, 1929 - Jan 22, 2018" in html
    assert "A Wizard of Earthsea" in html


def test_author_detail_missing_is_404(client, seeded):
    response = client.get("/catalog/author/9999")
    assert response.status_code == 404
    assert b"Author not found" in response.data


def test_author_create_form_renders(client, catalog):
    response = client.get("/catalog/author/create")
    assert response.status_code == 200
    assert b"Create Author" in response.data


def test_author_create_redirects_to_new_author(client, catalog):
    response = client.post("/catalog/author/create", data={
        "first_name": "  Isaac ",
        "family_name": "Asimov",
        "date_of_birth": "1920-01-02",
        "date_of_death": "",
    })
    assert response.status_code == 302
    author_id = int(response.headers["Location"].rsplit("/", 1)[1])
    author = get_author(catalog, author_id)
    assert author.first_name == "Isaac"
    assert author.date_of_birth.year == 1920
    assert author.date_of_death is None


def test_author_create_with_empty_first_name_rerenders_form(client, catalog):
    response = client.post("/catalog/author/create", data={"first_name": "", "family_name": "Asimov"})
    assert response.status_code == 200
    assert b"First name must be specified." in response.data
    assert b'value="Asimov"' in response.data
    assert count(catalog, catalog.Author) == 0


def test_author_create_rejects_non_alphanumeric_names(client, catalog):
    response = client.post("/catalog/author/create", data={"first_name": "Is@ac", "family_name": "Asimov"})
    assert response.status_code == 200
    assert b"First name has non-alphanumeric characters." in response.data
    assert count(catalog, catalog.Author) == 0


def test_author_create_rejects_bad_dates(client, catalog):
    response = client.post("/catalog/author/create", data={
        "first_name": "Isaac",
        "family_name": "Asimov",
        "date_of_birth": "1992-04-06",
        "date_of_death": "1920-01-02",
    })
    assert response.status_code == 200
    assert b"Date of death must not be before date of birth." in response.data
    assert count(catalog, catalog.Author) == 0


def test_author_update_form_is_seeded(client, seeded):
    response = client.get(f"/catalog/author/{seeded.author}/update")
    assert response.status_code == 200
    assert b'value="Ursula"' in response.data
    assert b'value="1929-10-21"' in response.data


def test_author_update_replaces_record(client, catalog, seeded):
    response = client.post(f"/catalog/author/{seeded.author}/update", data={
        "first_name": "Ursula",
        "family_name": "Guin",
        "date_of_birth": "",
        "date_of_death": "",
    })
    assert response.status_code == 302
    assert response.headers["Location"] == f"/catalog/author/{seeded.author}"
    author = get_author(catalog, seeded.author)
    assert author.family_name == "Guin"
    assert author.date_of_birth is None
    assert count(catalog, catalog.Author) == 2


def test_author_update_missing_is_404(client, seeded):
    assert client.get("/catalog/author/9999/update").status_code == 404
    response = client.post("/catalog/author/9999/update", data={"first_name": "A", "family_name": "B"})
    assert response.status_code == 404


def test_author_update_with_errors_keeps_record(client, catalog, seeded):
    response = client.post(f"/catalog/author/{seeded.author}/update", data={"first_name": "", "family_name": "X"})
    assert response.status_code == 200
    assert b"First name must be specified." in response.data
    assert get_author(catalog, seeded.author).first_name == "Ursula"


def test_author_delete_confirmation_lists_books(client, seeded):
    response = client.get(f"/catalog/author/{seeded.author}/delete")
    assert response.status_code == 200
    assert b"Delete the following books" in response.data
    assert b"A Wizard of Earthsea" in response.data


def test_author_delete_blocked_while_books_exist(client, catalog, seeded):
    response = client.post(f"/catalog/author/{seeded.author}/delete")
    assert response.status_code == 200
    assert b"Delete the following books" in response.data
    assert b"A Wizard of Earthsea" in response.data
    assert get_author(catalog, seeded.author) is not None


def test_author_delete_without_books(client, catalog, seeded):
    response = client.post(f"/catalog/author/{seeded.idle_author}/delete")
    assert response.status_code == 302
    assert response.headers["Location"] == "/catalog/authors"
    assert get_author(catalog, seeded.idle_author) is None


def test_author_delete_missing_redirects_to_list(client, seeded):
    response = client.get("/catalog/author/9999/delete")
    assert response.status_code == 302
    assert response.headers["Location"] == "/catalog/authors"
