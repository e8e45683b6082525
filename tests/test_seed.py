from seed import DEMO_BOOKS, DEMO_MEMBERS, load_demo_data


def test_seeding_tops_up_missing_records(storage, catalog) -> None:
    assert load_demo_data(catalog) == len(DEMO_MEMBERS) + len(DEMO_BOOKS)

    catalog.delete_member("m3")
    catalog.update_book("b1", "Clean Code, 2nd ed.")

    assert load_demo_data(catalog) == 1
    assert storage.members.find_by_id("m3").name == "Liis"
    assert storage.books.find_by_id("b1").title == "Clean Code, 2nd ed."
