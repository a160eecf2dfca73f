"""HTTP API over a FileManager built from test doubles."""

from pathlib import Path
from urllib.parse import parse_qs, urlsplit

import httpx
import pytest_asyncio

from skydrive.main import app
from skydrive.services.file_storage import LocalObjectStore

from conftest import make_session


@pytest_asyncio.fixture
async def client(manager):
    app.state.file_manager = manager
    async with httpx.AsyncClient(
        transport=httpx.ASGITransport(app=app),
        base_url="http://testserver",
        headers={"Authorization": "Bearer access-token"},
    ) as c:
        yield c
    del app.state.file_manager


class TestAuthRoutes:
    async def test_session_requires_sign_in(self, client, auth):
        auth.session = None

        response = await client.get("/api/auth/session")

        assert response.status_code == 401
        assert response.json()["detail"] == "Not signed in"

    async def test_login(self, client, auth):
        auth.session = None

        response = await client.post("/api/auth/login", json={"email": "u7@example.com", "password": "secret"})

        assert response.status_code == 200
        body = response.json()
        assert body["userId"] == "u7"
        assert body["accessToken"] == "u7-token"

        session = await client.get("/api/auth/session", headers={"Authorization": "Bearer u7-token"})
        assert session.json()["email"] == "u7@example.com"

    async def test_bad_login(self, client, manager):
        response = await client.post("/api/auth/login", json={"email": "u1@example.com", "password": "nope"})

        assert response.status_code == 401
        assert manager.notifier.recent()[0].message == "Invalid login credentials"

    async def test_logout(self, client, auth):
        response = await client.post("/api/auth/logout")

        assert response.status_code == 200
        assert auth.session is None


class TestFileRoutes:
    async def test_file_routes_require_sign_in(self, client, auth):
        auth.session = None

        assert (await client.get("/api/files")).status_code == 401

    async def test_anonymous_requests_are_rejected(self, client, seed, manager):
        [file] = await seed("a.txt")
        anonymous = {"Authorization": ""}

        assert (await client.get("/api/files", headers=anonymous)).status_code == 401
        deleted = await client.delete(f"/api/files/{file.id}", headers=anonymous)
        assert deleted.status_code == 401
        assert (await client.post("/api/auth/logout", headers=anonymous)).status_code == 401
        assert [f.id for f in await manager.metadata.list_files("u1")] == [file.id]

    async def test_unknown_token_is_rejected(self, client, seed):
        await seed("a.txt")

        response = await client.get("/api/files", headers={"Authorization": "Bearer forged"})

        assert response.status_code == 401
        assert response.headers["www-authenticate"] == "Bearer"

    async def test_other_users_token_is_forbidden(self, client, seed, auth, manager):
        [file] = await seed("a.txt")
        other = make_session("u2", token="u2-token")
        auth.tokens[other.access_token] = other.user
        as_other = {"Authorization": "Bearer u2-token"}

        assert (await client.get("/api/files", headers=as_other)).status_code == 403
        trashed = await client.post(f"/api/files/{file.id}/trash", headers=as_other)
        assert trashed.status_code == 403
        assert (await manager.metadata.list_files("u1"))[0].is_trashed is False

    async def test_upload_then_list(self, client, manager):
        response = await client.post(
            "/api/files/upload",
            files=[("files", ("report.pdf", b"%PDF-1.4 body", "application/pdf"))],
        )
        assert response.status_code == 202
        [task] = response.json()["uploads"]
        assert task["fileName"] == "report.pdf"
        assert task["sizeBytes"] == len(b"%PDF-1.4 body")

        await manager.coordinator.join()

        body = (await client.get("/api/files")).json()
        [file] = body["files"]
        assert file["fileName"] == "report.pdf"
        assert file["mimeType"] == "application/pdf"
        assert file["thumbnailUrl"] is None
        assert (await client.get("/api/uploads")).json()["uploads"] == []

    async def test_large_upload_is_spooled_to_disk_and_cleaned_up(
        self, client, manager, tus_transport, test_settings,
    ):
        manager.coordinator.threshold = 16
        body = b"z" * 100

        response = await client.post(
            "/api/files/upload",
            files=[("files", ("big.bin", body, "application/octet-stream"))],
        )
        assert response.status_code == 202
        await manager.coordinator.join()

        [upload_url] = tus_transport.created
        assert bytes(tus_transport.sessions[upload_url]["data"]) == body
        [file] = manager.files.snapshot.items
        assert file.file_name == "big.bin"
        assert file.file_size == 100
        assert list(Path(test_settings.UPLOAD_SPOOL_PATH).iterdir()) == []

    async def test_trash_restore_and_listing(self, client, seed):
        [file] = await seed("a.txt")

        trashed = await client.post(f"/api/files/{file.id}/trash")
        assert trashed.json()["isTrashed"] is True
        assert (await client.get("/api/files")).json()["files"] == []
        assert len((await client.get("/api/files", params={"trashed": "true"})).json()["files"]) == 1

        restored = await client.post(f"/api/files/{file.id}/restore")
        assert restored.json()["isTrashed"] is False

    async def test_share_and_notifications(self, client, seed):
        [file] = await seed("a.txt")

        shared = (await client.post(f"/api/files/{file.id}/share")).json()

        assert shared["shareUrl"] == f"https://drive.test/share/{file.id}"
        notes = (await client.get("/api/notifications")).json()
        assert notes[0]["message"] == "Sharing enabled"
        assert notes[0]["level"] == "success"

    async def test_rename(self, client, seed):
        [file] = await seed("a.txt")

        response = await client.patch(f"/api/files/{file.id}", json={"fileName": "b.txt"})

        assert response.json()["fileName"] == "b.txt"
        blank = await client.patch(f"/api/files/{file.id}", json={"fileName": " "})
        assert blank.status_code == 400

    async def test_unknown_file_is_404(self, client):
        assert (await client.post("/api/files/missing/trash")).status_code == 404
        assert (await client.get("/api/files/missing/signed-url")).status_code == 404

    async def test_delete_and_empty_trash(self, client, seed, manager):
        [one] = await seed("one.txt", trashed=True)
        await seed("two.txt", "three.txt", trashed=True)

        deleted = await client.delete(f"/api/files/{one.id}")
        assert deleted.json() == {"deleted": True, "id": one.id}

        emptied = await client.delete("/api/trash")
        assert emptied.json() == {"cleared": 2}
        assert await manager.metadata.list_files("u1") == []

    async def test_signed_url_and_storage(self, client, seed):
        [file] = await seed("a.txt", size=25)

        signed = (await client.get(f"/api/files/{file.id}/signed-url")).json()
        assert signed["signedUrl"].startswith("https://cdn.test/sign/")
        assert signed["expiresIn"] == 3600

        usage = (await client.get("/api/storage")).json()
        assert usage["usedStorage"] == 25

    async def test_sync(self, client, seed):
        await seed("a.txt")

        response = await client.post("/api/files/sync")

        assert response.status_code == 200
        assert [f["fileName"] for f in response.json()["files"]] == ["a.txt"]


class TestShareRoutes:
    async def test_shared_file_is_readable_without_signing_in(self, client, seed, manager, auth):
        [file] = await seed("photo.png", size=10)
        assert await manager.toggle_share(file.id)
        auth.session = None

        response = await client.get(f"/api/share/{file.id}", headers={"Authorization": ""})

        assert response.status_code == 200
        body = response.json()
        assert body["fileName"] == "photo.png"
        assert body["fileSize"] == 10
        assert body["downloadUrl"] == f"https://cdn.test/sign/{file.file_path}?ttl=3600"
        assert "filePath" not in body and "userId" not in body

    async def test_unshared_trashed_and_unknown_files_are_404(self, client, seed, manager):
        private, trashed = await seed("private.txt", "gone.txt")
        assert await manager.toggle_share(trashed.id)
        assert await manager.trash(trashed.id)

        for file_id in (private.id, trashed.id, "missing"):
            assert (await client.get(f"/api/share/{file_id}")).status_code == 404


class TestStorageRoute:
    @pytest_asyncio.fixture
    async def local_store(self, manager, test_settings):
        store = LocalObjectStore(test_settings)
        await store.put("u1/1_a.txt", b"local bytes")
        manager.object_store = store
        return store

    async def test_signed_url_serves_the_object(self, client, local_store):
        url = await local_store.create_signed_url("u1/1_a.txt", 60)

        response = await client.get(url, headers={"Authorization": ""})

        assert response.status_code == 200
        assert response.content == b"local bytes"

    async def test_public_url_serves_the_object(self, client, local_store):
        response = await client.get(local_store.get_public_url("u1/1_a.txt"))

        assert response.status_code == 200
        assert response.content == b"local bytes"

    async def test_unsigned_tampered_and_expired_urls_are_refused(self, client, local_store):
        url = urlsplit(await local_store.create_signed_url("u1/1_a.txt", 60))
        query = {k: v[0] for k, v in parse_qs(url.query).items()}
        expired = urlsplit(await local_store.create_signed_url("u1/1_a.txt", -5))

        assert (await client.get("/storage/u1/1_a.txt")).status_code == 403
        tampered = {"token": query["token"], "expires": int(query["expires"]) + 3600}
        assert (await client.get("/storage/u1/1_a.txt", params=tampered)).status_code == 403
        assert (await client.get("/storage/u1/other.txt", params=query)).status_code == 403
        assert (await client.get(f"/storage/u1/1_a.txt?{expired.query}")).status_code == 403

    async def test_missing_object_is_404(self, client, local_store):
        url = local_store.get_public_url("u1/gone.txt")

        assert (await client.get(url)).status_code == 404

    async def test_not_served_for_other_backends(self, client):
        assert (await client.get("/storage/u1/1_a.txt", params={"token": "x"})).status_code == 404
