"""SIP URI: ``sip:user:password@host:port;uri-parameters?headers``."""

from __future__ import annotations

from dataclasses import dataclass, field


def _params_to_string(params: dict[str, str], sep: str) -> str:
    return sep.join(f"{key}={value}" if value else key for key, value in params.items())


@dataclass
class Uri:
    """Parsed form of a SIP or SIPS URI."""

    encrypted: bool = False
    wildcard: bool = False
    user: str = ""
    password: str = field(default="", repr=False)
    host: str = ""
    port: int = 0
    uri_params: dict[str, str] = field(default_factory=dict)
    headers: dict[str, str] = field(default_factory=dict)

    def __str__(self) -> str:
        parts = ["sips:" if self.is_encrypted() else "sip:"]
        if self.user:
            parts.append(self.user)
            if self.password:
                parts.append(":" + self.password)
            parts.append("@")
        parts.append(self.host)
        if self.port > 0:
            parts.append(f":{self.port}")
        if self.uri_params:
            parts.append(";" + _params_to_string(self.uri_params, ";"))
        if self.headers:
            parts.append("?" + _params_to_string(self.headers, "&"))
        return "".join(parts)

    def clone(self) -> Uri:
        """Return a copy that can be changed without touching this one."""
        return Uri(
            encrypted=self.encrypted,
            wildcard=self.wildcard,
            user=self.user,
            password=self.password,
            host=self.host,
            port=self.port,
            uri_params=dict(self.uri_params),
            headers=dict(self.headers),
        )

    def is_encrypted(self) -> bool:
        """True for a SIPS URI."""
        return self.encrypted

    def addr(self) -> str:
        """Address form ``sip:user@host[:port]``."""
        address = f"{self.user}@{self.host}"
        if self.port > 0:
            address += f":{self.port}"
        return ("sips:" if self.encrypted else "sip:") + address

    def host_port(self) -> str:
        """``host:port``, port included even when zero."""
        return f"{self.host}:{self.port}"