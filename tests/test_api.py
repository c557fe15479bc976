from fastapi.testclient import TestClient

from dynacrud.core.security import CsrfGuard, actor_from_token


def test_root(client: TestClient):
    response = client.get("/")
    assert response.status_code == 200


def test_create_and_read(client: TestClient, posts):
    """Submitting a post returns its id and the stored row carries a slug"""
    response = client.post("/entities/posts", json={"title": "Hello World"})

    assert response.status_code == 200
    assert response.json() == {"success": True, "id": 1}

    row = client.get("/entities/posts/1").json()
    assert row["title"] == "Hello World"
    assert row["slug"] == "hello-world"


def test_update_through_api(client: TestClient, posts):
    created = client.post("/entities/posts", json={"title": "Hello"}).json()

    response = client.post("/entities/posts", json={"id": created["id"], "title": "Changed"})
    assert response.status_code == 200

    assert client.get(f"/entities/posts/{created['id']}").json()["slug"] == "changed"


def test_validation_errors_are_422(client: TestClient, posts):
    response = client.post("/entities/posts", json={"title": ""})

    assert response.status_code == 422
    assert response.json()["detail"] == {"title": ["The field Title is required"]}


def test_unknown_table_is_404(client: TestClient):
    assert client.post("/entities/nothing_here", json={"a": 1}).status_code == 404
    assert client.get("/entities/nothing_here/1").status_code == 404


def test_missing_row_is_404(client: TestClient, posts):
    assert client.get("/entities/posts/99").status_code == 404
    assert client.get("/entities/posts/not-a-number").status_code == 404
    assert client.delete("/entities/posts/99").status_code == 404


def test_list(client: TestClient, posts):
    for title in ("One", "Two", "Three"):
        client.post("/entities/posts", json={"title": title})

    body = client.get("/entities/posts", params={"per_page": 2}).json()

    assert body["total"] == 3
    assert [item["title"] for item in body["items"]] == ["Three", "Two"]


def test_soft_delete_restore_and_force(client: TestClient, posts):
    created = client.post("/entities/posts", json={"title": "Hello"}).json()
    url = f"/entities/posts/{created['id']}"

    assert client.delete(url).status_code == 200
    assert client.get(url).status_code == 404

    assert client.post(f"{url}/restore").status_code == 200
    assert client.get(url).status_code == 200

    assert client.delete(url, params={"force": True}).status_code == 200
    assert client.get(f"{url}/history").status_code == 404


def test_permission_denied_is_403(client: TestClient, configure):
    configure("tags", {"permissions": {"create": ["admin"], "read": ["*"]}})

    response = client.post("/entities/tags", json={"name": "python"})
    assert response.status_code == 403
    assert response.json()["detail"] == "You do not have permission to create records"


def test_bearer_token_sets_the_actor(client: TestClient, configure, auth_headers_admin):
    configure("tags", {"permissions": {"create": ["admin"], "read": ["*"]}})

    response = client.post("/entities/tags", json={"name": "python"}, headers=auth_headers_admin)
    assert response.status_code == 200


def test_bad_token_is_401(client: TestClient, posts):
    response = client.post(
        "/entities/posts", json={"title": "x"}, headers={"Authorization": "Bearer nope"}
    )
    assert response.status_code == 401


def test_workflow_transition(client: TestClient, orders, insert_row, auth_headers_admin):
    order_id = insert_row("orders", reference="A-1")
    url = f"/entities/orders/{order_id}/transitions/process"

    # Guests may not process orders
    assert client.post(url).status_code == 409

    response = client.post(url, headers=auth_headers_admin)
    assert response.status_code == 200
    assert response.json() == {"success": True, "from": "pending", "to": "processing"}

    history = client.get(f"/entities/orders/{order_id}/history").json()
    assert [row["transition"] for row in history["workflow"]] == ["process"]
    assert history["audit"] == []


def test_transition_on_table_without_workflow(client: TestClient, posts):
    created = client.post("/entities/posts", json={"title": "Hello"}).json()

    response = client.post(f"/entities/posts/{created['id']}/transitions/publish")
    assert response.status_code == 400
    assert response.json()["detail"] == "Workflow is not enabled"


def test_csrf_token_endpoint(client: TestClient, auth_headers_admin):
    token = client.get("/csrf/token", headers=auth_headers_admin).json()["csrf_token"]

    admin = actor_from_token(auth_headers_admin["Authorization"].split()[1])
    assert CsrfGuard().validate(token, admin)


def test_list_filters_and_search(client: TestClient, configure, posts_config):
    posts_config["list_view"] = {"searchable": ["title"]}
    configure("posts", posts_config)

    client.post("/entities/posts", json={"title": "Python tips", "status": "published"})
    client.post("/entities/posts", json={"title": "Python basics"})
    client.post("/entities/posts", json={"title": "Gardening", "status": "published"})

    body = client.get("/entities/posts", params={"status": "published", "search": "python"}).json()
    assert [item["title"] for item in body["items"]] == ["Python tips"]

    response = client.get("/entities/posts", params={"colour": "red"})
    assert response.status_code == 400
    assert response.json()["detail"] == "Unknown filter field 'colour'"
