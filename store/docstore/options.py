"""
Connection options for opening a document store.

Options arrive as a database name, an http(s) URL, or a mapping, and
are validated with pydantic before any backend is constructed.
"""

from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, model_validator


class StoreAuth(BaseModel):
    """Basic authentication credentials for a remote database."""

    model_config = ConfigDict(extra="forbid")

    username: str
    password: str


class StoreOptions(BaseModel):
    """Options describing which database to open.

    Attributes:
        name: Local database name or the URL of a CouchDB database
        adapter: "memory" or "http"; inferred from the name when omitted
        auth: Basic auth for remote databases
        headers: Extra HTTP headers sent with every request
        timeout: HTTP timeout in seconds
        skip_setup: Do not create the remote database on first use
    """

    model_config = ConfigDict(extra="forbid")

    name: str = Field(min_length=1)
    adapter: Literal["memory", "http"] | None = None
    auth: StoreAuth | None = None
    headers: dict[str, str] = Field(default_factory=dict)
    timeout: float | None = Field(default=None, gt=0)
    skip_setup: bool = False

    @property
    def is_remote(self) -> bool:
        return self.name.startswith(("http://", "https://"))

    @property
    def resolved_adapter(self) -> str:
        if self.adapter is not None:
            return self.adapter
        return "http" if self.is_remote else "memory"

    @model_validator(mode="after")
    def _check_adapter(self) -> StoreOptions:
        if self.resolved_adapter == "http" and not self.is_remote:
            raise ValueError("http adapter requires an http(s) database URL")
        if self.resolved_adapter == "memory" and (self.auth or self.headers):
            raise ValueError("auth and headers only apply to http databases")
        return self
