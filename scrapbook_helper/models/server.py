from dataclasses import dataclass


@dataclass(frozen=True)
class ServerIdent:
    """
    Normalized identity of a game server.

    Example:
        ServerIdent.from_url("https://s7.sfgame.eu/")
        -> url="s7.sfgame.eu", ident="s7sfgameeu"
    """

    url: str
    ident: str

    @classmethod
    def from_url(cls, url: str) -> "ServerIdent":
        stripped = url.strip()
        if stripped.startswith("https:"):
            stripped = stripped[len("https:") :]
        normalized = stripped.lower().replace("/", "")
        ident = "".join(c for c in normalized if c.isalnum())
        if not ident:
            raise ValueError(f"Invalid server url: {url!r}")
        return cls(url=normalized, ident=ident)

    def __str__(self) -> str:
        return self.ident
