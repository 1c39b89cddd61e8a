# =============================================================================
# tests/test_upload_routes.py - Upload API Tests
# =============================================================================
# Covers local and S3 uploads, direct image deletion by URL, and the JSON
# error responses shared by every API route.
# =============================================================================

import io

from botocore.exceptions import ClientError

from conftest import CUSTOMER_EMAIL
from storefront.settings import Settings


def image_file(filename="shirt.jpg", content=b"\xff\xd8\xff"):
    return (io.BytesIO(content), filename)


def s3_app(make_app, settings, s3_settings, s3_client):
    configured = Settings(
        storage_root=settings.storage_root,
        default_admin_email=settings.default_admin_email,
        jwt_secret_key=settings.jwt_secret_key,
        s3=s3_settings,
    )
    return make_app(configured, s3_client=s3_client)


class TestLocalUpload:
    """Test POST /api/uploads."""

    def test_upload_then_serve(self, client, auth_headers, storage_root):
        response = client.post(
            "/api/uploads",
            data={"image": image_file()},
            headers=auth_headers(),
            content_type="multipart/form-data",
        )

        assert response.status_code == 200
        reference = response.get_json()["image"]
        assert reference.startswith("/uploads/")
        assert (storage_root / reference.lstrip("/")).exists()

        served = client.get(reference)
        assert served.status_code == 200
        assert served.data == b"\xff\xd8\xff"

    def test_missing_file(self, client, auth_headers):
        response = client.post(
            "/api/uploads",
            data={},
            headers=auth_headers(),
            content_type="multipart/form-data",
        )

        assert response.status_code == 400
        assert response.get_json()["message"] == "No file uploaded"

    def test_requires_admin(self, client, auth_headers):
        response = client.post(
            "/api/uploads",
            data={"image": image_file()},
            headers=auth_headers(CUSTOMER_EMAIL),
            content_type="multipart/form-data",
        )

        assert response.status_code == 403

    def test_oversized_upload(self, make_app, settings, auth_headers):
        small = Settings(
            storage_root=settings.storage_root,
            default_admin_email=settings.default_admin_email,
            jwt_secret_key=settings.jwt_secret_key,
            max_upload_size_mb=0,
        )
        client = make_app(small).test_client()

        response = client.post(
            "/api/uploads",
            data={"image": image_file()},
            headers=auth_headers(),
            content_type="multipart/form-data",
        )

        assert response.status_code == 413
        assert "message" in response.get_json()


class TestS3Upload:
    """Test POST /api/uploads/s3."""

    def test_not_configured(self, client, auth_headers):
        response = client.post(
            "/api/uploads/s3",
            data={"image": image_file()},
            headers=auth_headers(),
            content_type="multipart/form-data",
        )

        assert response.status_code == 503
        assert response.get_json()["message"] == "S3 not configured"

    def test_upload(self, make_app, settings, s3_settings, s3_client, auth_headers):
        client = s3_app(make_app, settings, s3_settings, s3_client).test_client()

        response = client.post(
            "/api/uploads/s3",
            data={"image": image_file()},
            headers=auth_headers(),
            content_type="multipart/form-data",
        )

        assert response.status_code == 200
        url = response.get_json()["image"]
        assert url.startswith("https://bkt.s3.us-east-1.amazonaws.com/products/")
        assert s3_client.put_object.call_args.kwargs["Body"] == b"\xff\xd8\xff"

    def test_upload_failure(self, make_app, settings, s3_settings, s3_client, auth_headers):
        s3_client.put_object.side_effect = ClientError(
            {"Error": {"Code": "AccessDenied", "Message": "Access Denied"}}, "PutObject"
        )
        client = s3_app(make_app, settings, s3_settings, s3_client).test_client()

        response = client.post(
            "/api/uploads/s3",
            data={"image": image_file()},
            headers=auth_headers(),
            content_type="multipart/form-data",
        )

        assert response.status_code == 500
        assert response.get_json()["message"].startswith("S3 upload failed")


class TestDeleteUploadedImage:
    """Test DELETE /api/uploads."""

    def test_requires_token(self, client):
        response = client.delete("/api/uploads", json={"imageUrl": "/uploads/a.jpg"})
        assert response.status_code == 401

    def test_deletes_local_image(self, client, auth_headers, storage_root):
        target = storage_root / "uploads" / "direct.jpg"
        target.write_bytes(b"bytes")

        response = client.delete(
            "/api/uploads", json={"imageUrl": "/uploads/direct.jpg"}, headers=auth_headers()
        )

        assert response.status_code == 200
        assert response.get_json()["message"] == "Local image deleted successfully"
        assert not target.exists()

    def test_default_image_refused(self, client, auth_headers):
        response = client.delete(
            "/api/uploads", json={"imageUrl": "/images/p1.jpg"}, headers=auth_headers()
        )

        assert response.status_code == 400
        assert response.get_json()["result"]["status"] == "not-eligible"

    def test_null_byte_path_refused(self, client, auth_headers):
        response = client.delete(
            "/api/uploads", json={"imageUrl": "/uploads/a\u0000b.jpg"}, headers=auth_headers()
        )

        assert response.status_code == 400
        assert response.get_json()["result"]["status"] == "not-eligible"

    def test_remote_image(self, make_app, settings, s3_settings, s3_client, auth_headers):
        client = s3_app(make_app, settings, s3_settings, s3_client).test_client()

        response = client.delete(
            "/api/uploads",
            json={"imageUrl": "https://s3.us-east-1.amazonaws.com/bkt/products/1-a.jpg"},
            headers=auth_headers(),
        )

        assert response.status_code == 200
        s3_client.delete_object.assert_called_once_with(Bucket="bkt", Key="products/1-a.jpg")


class TestApiErrors:
    """Test shared JSON error responses and health checks."""

    def test_unknown_api_route(self, client):
        response = client.get("/api/does-not-exist")

        assert response.status_code == 404
        assert response.get_json() == {"message": "API endpoint not found"}

    def test_health(self, client):
        response = client.get("/api/health")

        assert response.status_code == 200
        body = response.get_json()
        assert body["status"] == "healthy"
        assert body["environment"] == "test"
        assert body["uptime"] >= 0
