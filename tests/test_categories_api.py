from __future__ import annotations

import pytest
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Query

from quiz_service import crud
from shared.database import make_session_factory


def test_create_and_get_category(api, client) -> None:
    lit = api.category("Literature")
    am = api.category("American Literature", lit)

    r = client.get(f"/categories/{am}")
    assert r.status_code == 200
    body = r.json()
    assert body["success"] is True
    assert body["data"] == {
        "id": am,
        "name": "American Literature",
        "parentId": lit,
        "fullPath": "Literature/American Literature",
    }


def test_create_category_validation(client) -> None:
    r = client.post("/categories", json={"name": ""})
    assert r.status_code == 400
    assert r.json()["success"] is False
    assert "name" in r.json()["error"]

    r = client.post("/categories", json={"name": "   "})
    assert r.status_code == 400

    r = client.post("/categories", json={"name": "Orphan", "parentId": "missing"})
    assert r.status_code == 404


def test_unknown_category_is_404(client) -> None:
    r = client.get("/categories/nope")
    assert r.status_code == 404
    assert r.json() == {"success": False, "error": "Category not found."}


def test_list_flat_and_tree(api, client) -> None:
    hist = api.category("History")
    lit = api.category("Literature")
    am = api.category("American Literature", lit)
    api.category("Poe", am)

    flat = client.get("/categories").json()["data"]
    assert {c["fullPath"] for c in flat} == {
        "History",
        "Literature",
        "Literature/American Literature",
        "Literature/American Literature/Poe",
    }

    tree = client.get("/categories", params={"format": "tree"}).json()["data"]
    assert [n["name"] for n in tree] == ["History", "Literature"]
    assert tree[0]["id"] == hist and tree[0]["children"] == []
    poe = tree[1]["children"][0]["children"][0]
    assert poe["fullPath"] == "Literature/American Literature/Poe"

    assert client.get("/categories", params={"format": "xml"}).status_code == 400


def test_rename_category(api, client) -> None:
    parent = api.category("Sience")
    child = api.category("Physics", parent)

    r = client.put(f"/categories/{parent}", json={"name": "Science"})
    assert r.status_code == 200
    assert r.json()["data"] == {"id": parent, "name": "Science"}
    assert client.get(f"/categories/{child}").json()["data"]["fullPath"] == "Science/Physics"

    assert client.put("/categories/missing", json={"name": "X"}).status_code == 404


def test_delete_category_removes_subtree_and_questions(api, client) -> None:
    lit = api.category("Literature")
    am = api.category("American Literature", lit)
    poe = api.category("Poe", am)
    other = api.category("History")

    api.question(lit, "Who wrote Hamlet?", ["Shakespeare", "Marlowe"], "Shakespeare")
    q_am = api.question(am, "Who wrote Moby-Dick?", ["Melville", "Hawthorne"], "Melville")
    api.question(poe, "Who wrote The Raven?", ["Poe", "Whitman"], "Poe")
    kept = api.question(other, "When did WW2 end?", ["1945", "1918"], "1945")

    r = client.delete(f"/categories/{lit}")
    assert r.status_code == 200
    data = r.json()["data"]
    assert data["deletedCategories"] == 3
    assert data["deletedQuestions"] == 3

    for cid in (lit, am, poe):
        assert client.get(f"/categories/{cid}").status_code == 404
    assert client.get(f"/questions/{q_am}").status_code == 404
    assert client.get(f"/questions/{kept}").status_code == 200
    assert [c["id"] for c in client.get("/categories").json()["data"]] == [other]


def test_delete_unknown_category(client) -> None:
    assert client.delete("/categories/missing").status_code == 404


def test_failed_cascade_leaves_everything_in_place(api, client, app, monkeypatch) -> None:
    lit = api.category("Literature")
    am = api.category("American Literature", lit)
    poe = api.category("Poe", am)
    questions = [
        api.question(lit, "Who wrote Hamlet?", ["Shakespeare", "Marlowe"], "Shakespeare"),
        api.question(am, "Who wrote Moby-Dick?", ["Melville", "Hawthorne"], "Melville"),
        api.question(poe, "Who wrote The Raven?", ["Poe", "Whitman"], "Poe"),
    ]

    real_delete = Query.delete
    calls = []

    def delete_then_fail(self, *args, **kwargs):
        # options, questions and the deepest category go through; the next category fails
        calls.append(1)
        if len(calls) == 4:
            raise SQLAlchemyError("storage went away")
        return real_delete(self, *args, **kwargs)

    monkeypatch.setattr(Query, "delete", delete_then_fail)
    SessionLocal = make_session_factory(app.state.engine)
    with SessionLocal() as db:
        with pytest.raises(SQLAlchemyError):
            crud.delete_category(db, lit)
    monkeypatch.undo()

    assert len(calls) == 4
    for cid in (lit, am, poe):
        assert client.get(f"/categories/{cid}").status_code == 200
    for qid in questions:
        q = api.get_question(qid)
        assert len(q["options"]) == 2
