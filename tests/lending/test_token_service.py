from application.services.token_service import TokenService
from domain.lending.entity import UserRole


def test_access_token_identifies_user():
    tokens = TokenService(secret_key="unit-test-secret", algorithm="HS256")
    token = tokens.create_access_token(17, UserRole.OPERATOR)
    assert tokens.verify_access_token(token) == 17


def test_invalid_tokens_resolve_to_none():
    tokens = TokenService(secret_key="unit-test-secret", algorithm="HS256")
    expired = tokens.create_access_token(17, UserRole.ADMIN, expires_minutes=-1)
    foreign = TokenService(secret_key="another-secret", algorithm="HS256").create_access_token(17, UserRole.ADMIN)

    assert tokens.verify_access_token(expired) is None
    assert tokens.verify_access_token(foreign) is None
    assert tokens.verify_access_token("not-a-jwt") is None
