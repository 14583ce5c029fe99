from datetime import date


def get_copy(catalog, copy_id):
    with catalog.app.app_context():
        return catalog.db.session.get(catalog.BookInstance, copy_id)


def test_bookinstance_list(client, seeded):
    response = client.get("/catalog/bookinstances")
    assert response.status_code == 200
    assert b"A Wizard of Earthsea : Parnassus, 1968" in response.data


def test_bookinstance_detail(client, seeded):
    response = client.get(f"/catalog/bookinstance/{seeded.copy}")
    assert response.status_code == 200
    assert b"<title>Copy: A Wizard of Earthsea</title>" in response.data
    assert b"Available" in response.data


def test_bookinstance_detail_missing_is_404(client, seeded):
    response = client.get("/catalog/bookinstance/9999")
    assert response.status_code == 404
    assert b"Book copy not found" in response.data


def test_bookinstance_create_form_defaults_to_maintenance(client, seeded):
    response = client.get("/catalog/bookinstance/create")
    assert response.status_code == 200
    assert b"A Wizard of Earthsea" in response.data
    assert b'selected value="Maintenance"' in response.data


def test_bookinstance_create(client, catalog, seeded):
    response = client.post("/catalog/bookinstance/create", data={
        "book": str(seeded.book),
        "imprint": "Puffin, 1971",
        "status": "Loaned",
        "due_back": "2026-12-01",
    })
    assert response.status_code == 302
    copy_id = int(response.headers["Location"].rsplit("/", 1)[1])
    copy = get_copy(catalog, copy_id)
    assert copy.status == "Loaned"
    assert copy.due_back == date(2026, 12, 1)


def test_bookinstance_create_without_due_date_uses_today(client, catalog, seeded):
    response = client.post("/catalog/bookinstance/create", data={
        "book": str(seeded.book),
        "imprint": "Puffin, 1971",
        "status": "Maintenance",
    })
    copy_id = int(response.headers["Location"].rsplit("/", 1)[1])
    assert get_copy(catalog, copy_id).due_back == date.today()


def test_bookinstance_create_rejects_unknown_status(client, catalog, seeded):
    response = client.post("/catalog/bookinstance/create", data={
        "book": str(seeded.book),
        "imprint": "Puffin, 1971",
        "status": "Lost",
    })
    assert response.status_code == 200
    assert b"Not a valid choice" in response.data
    with catalog.app.app_context():
        assert catalog.count_rows(catalog.BookInstance) == 1


def test_bookinstance_create_requires_imprint(client, catalog, seeded):
    response = client.post("/catalog/bookinstance/create", data={"book": str(seeded.book), "imprint": ""})
    assert response.status_code == 200
    assert b"Imprint must be specified." in response.data


def test_bookinstance_update(client, catalog, seeded):
    response = client.post(f"/catalog/bookinstance/{seeded.copy}/update", data={
        "book": str(seeded.book),
        "imprint": "Parnassus, 1968",
        "status": "Reserved",
        "due_back": "2026-11-15",
    })
    assert response.status_code == 302
    assert response.headers["Location"] == f"/catalog/bookinstance/{seeded.copy}"
    copy = get_copy(catalog, seeded.copy)
    assert copy.status == "Reserved"
    assert copy.due_back == date(2026, 11, 15)


def test_bookinstance_update_missing_is_404(client, seeded):
    assert client.get("/catalog/bookinstance/9999/update").status_code == 404


def test_bookinstance_delete(client, catalog, seeded):
    response = client.get(f"/catalog/bookinstance/{seeded.copy}/delete")
    assert response.status_code == 200
    assert b"Do you really want to delete this copy?" in response.data

    response = client.post(f"/catalog/bookinstance/{seeded.copy}/delete")
    assert response.status_code == 302
    assert response.headers["Location"] == "/catalog/bookinstances"
    assert get_copy(catalog, seeded.copy) is None
