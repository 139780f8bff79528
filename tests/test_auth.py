"""
Tests for registration, login, tokens and the profile endpoints.
"""
import jwt
import pytest
from datetime import datetime, timedelta, timezone

from app.config import settings
from app.services.auth_service import decode_token, REFRESH_TOKEN_TYPE
from app.services.encryption_service import mask_bank_account
from app.utils.password_hash import hash_password, verify_password, is_strong_password
from tests.conftest import register_user, login_admin, auth_headers, DEFAULT_PASSWORD, ADMIN_EMAIL


# ============================================
# Password helpers
# ============================================

class TestPasswordHash:
    """Tests for the bcrypt helpers and password policy"""

    def test_hash_and_verify(self):
        hashed = hash_password("Secret123")
        assert hashed != "Secret123"
        assert verify_password("Secret123", hashed) is True
        assert verify_password("Wrong123", hashed) is False

    def test_verify_with_malformed_hash(self):
        assert verify_password("Secret123", "not-a-bcrypt-hash") is False

    def test_empty_password_cannot_be_hashed(self):
        with pytest.raises(ValueError):
            hash_password("")

    def test_password_policy(self):
        assert is_strong_password("Password123") is True
        assert is_strong_password("password123") is False  # no upper-case
        assert is_strong_password("PASSWORD123") is False  # no lower-case
        assert is_strong_password("Password") is False  # no digit
        assert is_strong_password("Pa1") is False  # too short


# ============================================
# Registration
# ============================================

class TestRegister:
    """Tests for POST /api/auth/register"""

    def test_register_returns_tokens_and_user(self, client):
        response = client.post("/api/auth/register", json={
            "firstname": "Marie",
            "lastname": "Joseph",
            "email": "Marie@Example.com",
            "password": DEFAULT_PASSWORD,
            "phone": "+50937000000",
        })

        assert response.status_code == 201
        data = response.json()
        assert data["message"] == "User registered successfully"
        assert data["token_type"] == "bearer"
        assert data["expires_in"] == settings.jwt_expiration_hours * 3600
        assert data["user"]["email"] == "marie@example.com"  # normalized
        assert data["user"]["role"] == "member"
        assert "password_hash" not in data["user"]

    def test_register_masks_bank_account(self, client):
        response = client.post("/api/auth/register", json={
            "firstname": "Marie",
            "lastname": "Joseph",
            "email": "marie@example.com",
            "password": DEFAULT_PASSWORD,
            "compte_bancaire": "HT7600012345678901",
        })

        assert response.status_code == 201
        assert response.json()["user"]["compte_bancaire"] == "****8901"

    def test_register_duplicate_email(self, client):
        register_user(client, "marie@example.com")

        response = client.post("/api/auth/register", json={
            "firstname": "Autre",
            "lastname": "Personne",
            "email": "MARIE@example.com",
            "password": DEFAULT_PASSWORD,
        })

        assert response.status_code == 409
        assert response.json()["error"] == "Email already registered"

    def test_register_validation_error_format(self, client):
        response = client.post("/api/auth/register", json={
            "firstname": "M",
            "lastname": "Joseph",
            "email": "not-an-email",
            "password": "short",
        })

        assert response.status_code == 400
        data = response.json()
        assert data["error"] == "Validation failed"
        fields = {detail["field"] for detail in data["details"]}
        assert {"firstname", "email", "password"} <= fields


# ============================================
# Login and tokens
# ============================================

class TestLogin:
    """Tests for POST /api/auth/login and token handling"""

    def test_login_success(self, client):
        register_user(client, "marie@example.com")

        response = client.post("/api/auth/login", json={
            "email": "marie@example.com",
            "password": DEFAULT_PASSWORD,
        })

        assert response.status_code == 200
        data = response.json()
        assert data["message"] == "Login successful"
        assert data["user"]["last_login_at"] is not None

    def test_login_wrong_password(self, client):
        register_user(client, "marie@example.com")

        response = client.post("/api/auth/login", json={
            "email": "marie@example.com",
            "password": "WrongPassword1",
        })

        assert response.status_code == 401
        assert response.json()["error"] == "Invalid credentials"

    def test_login_unknown_email_same_error(self, client):
        response = client.post("/api/auth/login", json={
            "email": "nobody@example.com",
            "password": DEFAULT_PASSWORD,
        })

        assert response.status_code == 401
        assert response.json()["error"] == "Invalid credentials"

    def test_bootstrap_admin_can_login(self, client):
        admin = login_admin(client)

        response = client.get("/api/auth/verify", headers=admin["headers"])

        assert response.status_code == 200
        assert response.json()["user"]["email"] == ADMIN_EMAIL
        assert response.json()["user"]["role"] == "admin"

    def test_refresh_token(self, client):
        member = register_user(client, "marie@example.com")

        response = client.post("/api/auth/refresh-token", json={"refresh_token": member["refresh_token"]})

        assert response.status_code == 200
        new_token = response.json()["token"]
        verify = client.get("/api/auth/verify", headers=auth_headers(new_token))
        assert verify.status_code == 200
        assert verify.json()["valid"] is True

    def test_access_token_is_not_a_refresh_token(self, client):
        member = register_user(client, "marie@example.com")

        response = client.post("/api/auth/refresh-token", json={"refresh_token": member["token"]})

        assert response.status_code == 401
        assert response.json()["error"] == "Invalid refresh token"

    def test_refresh_token_cannot_authenticate_requests(self, client):
        member = register_user(client, "marie@example.com")
        payload = decode_token(member["refresh_token"], expected_type=REFRESH_TOKEN_TYPE)
        assert payload["userId"] == member["id"]

        response = client.get("/api/auth/verify", headers=auth_headers(member["refresh_token"]))

        assert response.status_code == 401


class TestAuthentication:
    """Tests for the bearer token dependency"""

    def test_missing_authorization_header(self, client):
        response = client.get("/api/auth/verify")

        assert response.status_code == 401
        assert response.json()["error"] == "Access token required"
        assert response.headers["WWW-Authenticate"] == "Bearer"

    def test_invalid_token(self, client):
        response = client.get("/api/auth/verify", headers=auth_headers("garbage"))

        assert response.status_code == 401
        assert response.json()["error"] == "Invalid token"

    def test_expired_token(self, client):
        member = register_user(client, "marie@example.com")
        expired = jwt.encode(
            {
                "userId": member["id"],
                "type": "access",
                "exp": datetime.now(timezone.utc) - timedelta(minutes=1),
            },
            settings.session_secret,
            algorithm=settings.jwt_algorithm,
        )

        response = client.get("/api/auth/verify", headers=auth_headers(expired))

        assert response.status_code == 401
        assert response.json()["error"] == "Token expired. Please login again."

    def test_deactivated_user_is_rejected(self, client):
        admin = login_admin(client)
        member = register_user(client, "marie@example.com")

        response = client.patch(
            f"/api/admin/users/{member['id']}/status",
            json={"is_active": False},
            headers=admin["headers"],
        )
        assert response.status_code == 200

        response = client.get("/api/auth/verify", headers=member["headers"])
        assert response.status_code == 401
        assert response.json()["error"] == "User not found or inactive"

    def test_member_cannot_access_admin_routes(self, client):
        member = register_user(client, "marie@example.com")

        response = client.get("/api/admin/dashboard-stats", headers=member["headers"])

        assert response.status_code == 403
        assert response.json()["error"] == "Admin access required"


# ============================================
# Profile
# ============================================

class TestProfile:
    """Tests for the profile and password endpoints"""

    def test_get_profile(self, client):
        member = register_user(client, "marie@example.com")

        response = client.get("/api/auth/profile", headers=member["headers"])

        assert response.status_code == 200
        assert response.json()["email"] == "marie@example.com"

    def test_update_profile(self, client):
        member = register_user(client, "marie@example.com")

        response = client.put("/api/auth/profile", json={
            "firstname": "Marie-Claire",
            "compte_bancaire": "HT7600012345674321",
        }, headers=member["headers"])

        assert response.status_code == 200
        data = response.json()
        assert data["firstname"] == "Marie-Claire"
        assert data["compte_bancaire"] == "****4321"

    def test_update_profile_email_taken(self, client):
        register_user(client, "jean@example.com")
        member = register_user(client, "marie@example.com")

        response = client.put("/api/auth/profile", json={"email": "jean@example.com"}, headers=member["headers"])

        assert response.status_code == 409

    def test_change_password(self, client):
        member = register_user(client, "marie@example.com")

        response = client.put("/api/auth/change-password", json={
            "current_password": DEFAULT_PASSWORD,
            "new_password": "NewPassword456",
        }, headers=member["headers"])
        assert response.status_code == 200

        old_login = client.post("/api/auth/login", json={"email": "marie@example.com", "password": DEFAULT_PASSWORD})
        new_login = client.post("/api/auth/login", json={"email": "marie@example.com", "password": "NewPassword456"})
        assert old_login.status_code == 401
        assert new_login.status_code == 200

    def test_change_password_wrong_current(self, client):
        member = register_user(client, "marie@example.com")

        response = client.put("/api/auth/change-password", json={
            "current_password": "NotMyPassword1",
            "new_password": "NewPassword456",
        }, headers=member["headers"])

        assert response.status_code == 400
        assert response.json()["error"] == "Current password is incorrect"

    def test_change_password_too_weak(self, client):
        member = register_user(client, "marie@example.com")

        response = client.put("/api/auth/change-password", json={
            "current_password": DEFAULT_PASSWORD,
            "new_password": "alllowercase",
        }, headers=member["headers"])

        assert response.status_code == 400

    def test_logout(self, client):
        member = register_user(client, "marie@example.com")

        response = client.post("/api/auth/logout", headers=member["headers"])

        assert response.status_code == 200


class TestBankAccountMasking:
    def test_mask_keeps_last_four(self):
        assert mask_bank_account("HT7600012345678901") == "****8901"

    def test_mask_none(self):
        assert mask_bank_account(None) is None
