from pydantic import AliasChoices, BaseModel, EmailStr, Field

# Browser clients send camelCase names; snake_case is accepted as well.
UPSTREAM_EMAIL = AliasChoices("upstream_email", "zulipEmail", "zulip_email")
UPSTREAM_TOKEN = AliasChoices("upstream_token", "zulipToken", "zulip_token")


class RegisterRequest(BaseModel):
    invite_code: str = Field(min_length=1, max_length=128, validation_alias=AliasChoices("invite_code", "inviteCode"))
    email: EmailStr = Field(max_length=256)
    password: str = Field(min_length=8, max_length=128)
    upstream_email: EmailStr = Field(max_length=256, validation_alias=UPSTREAM_EMAIL)
    upstream_token: str = Field(min_length=10, max_length=256, validation_alias=UPSTREAM_TOKEN)


class LoginRequest(BaseModel):
    email: EmailStr = Field(max_length=256)
    password: str = Field(min_length=8, max_length=128)


class RefreshRequest(BaseModel):
    refresh_token: str = Field(min_length=32, validation_alias=AliasChoices("refresh_token", "refreshToken"))


class UpdateCredentialRequest(BaseModel):
    upstream_email: EmailStr = Field(max_length=256, validation_alias=UPSTREAM_EMAIL)
    upstream_token: str = Field(min_length=10, max_length=256, validation_alias=UPSTREAM_TOKEN)


class TokenPair(BaseModel):
    token: str
    refresh_token: str
    token_type: str = "bearer"
    expires_in: int


class OkResponse(BaseModel):
    ok: bool = True


class MeResponse(BaseModel):
    id: int
    email: str
