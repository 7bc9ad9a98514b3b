"""
Product Service — トークン検証

トークンの発行は Auth Service の責務。ここでは共有シークレットで
署名を検証し、ユーザー識別子を取り出すだけ。
"""

from dataclasses import dataclass

import jwt

from .errors import Unauthorized

_IDENTITY_CLAIMS = ("username", "sub", "id")


@dataclass(frozen=True)
class Identity:
    username: str
    claims: dict


class TokenVerifier:
    def __init__(self, secret: str, algorithm: str = "HS256") -> None:
        self.secret = secret
        self.algorithm = algorithm

    def verify(self, token: str) -> Identity:
        if not token:
            raise Unauthorized("Missing bearer token")
        try:
            claims = jwt.decode(token, self.secret, algorithms=[self.algorithm])
        except jwt.ExpiredSignatureError:
            raise Unauthorized("Token has expired")
        except jwt.InvalidTokenError:
            raise Unauthorized("Invalid token")

        for key in _IDENTITY_CLAIMS:
            value = claims.get(key)
            if value:
                return Identity(username=str(value), claims=claims)
        raise Unauthorized("Token carries no identity claim")

    def verify_header(self, authorization: str | None) -> Identity:
        """Authorization: Bearer <token> ヘッダを検証する。"""
        if not authorization:
            raise Unauthorized("Missing Authorization header")
        scheme, _, token = authorization.partition(" ")
        if scheme.lower() != "bearer" or not token.strip():
            raise Unauthorized("Authorization header must be 'Bearer <token>'")
        return self.verify(token.strip())
