"""Path routing - longest-prefix match of request paths to backends."""

from collections.abc import Iterable
from dataclasses import dataclass

from core.exceptions import ConfigurationError, NoRouteFound


@dataclass(frozen=True)
class Route:
    """A configured path prefix and the backend it forwards to."""

    prefix: str
    backend: str
    rewrite: str | None = None

    def matches(self, path: str) -> bool:
        """Match on path-segment boundaries only."""
        if self.prefix == "/":
            return True
        return path == self.prefix or path.startswith(self.prefix + "/")

    def upstream_path(self, path: str) -> str:
        """Rewrite the inbound path for the backend."""
        remainder = path if self.prefix == "/" else path[len(self.prefix):]
        if self.rewrite is None:
            return remainder
        return self.rewrite.rstrip("/") + remainder


@dataclass(frozen=True)
class RouteMatch:
    route: Route
    upstream_path: str


class RouteTable:
    """Immutable snapshot of routes, longest prefix first."""

    def __init__(self, routes: Iterable[Route]) -> None:
        routes = list(routes)
        prefixes = [route.prefix for route in routes]
        duplicates = {prefix for prefix in prefixes if prefixes.count(prefix) > 1}
        if duplicates:
            raise ConfigurationError(f"Duplicate route prefixes: {', '.join(sorted(duplicates))}")
        self._routes = tuple(sorted(routes, key=lambda route: len(route.prefix), reverse=True))

    @property
    def routes(self) -> tuple[Route, ...]:
        return self._routes

    def resolve(self, path: str) -> RouteMatch:
        """Return the longest matching route or raise NoRouteFound."""
        for route in self._routes:
            if route.matches(path):
                return RouteMatch(route=route, upstream_path=route.upstream_path(path))
        raise NoRouteFound(f"No route for path {path!r}")


class Router:
    """Holds the active route table; replacement swaps the whole snapshot."""

    def __init__(self, routes: Iterable[Route]) -> None:
        self._table = RouteTable(routes)

    @property
    def table(self) -> RouteTable:
        return self._table

    def resolve(self, path: str) -> RouteMatch:
        return self._table.resolve(path)

    def replace(self, routes: Iterable[Route]) -> RouteTable:
        """Build a new snapshot and swap it in; in-flight lookups keep the old one."""
        table = RouteTable(routes)
        self._table = table
        return table
