from __future__ import annotations

from dataclasses import dataclass
from typing import Callable


@dataclass(frozen=True)
class LibraryDefinition:
    id: str
    name: str
    repo: str
    legacy_packages: tuple[str, ...] = ()


# Catalogue order is matcher order: earlier libraries win ambiguous names.
LIBRARIES: tuple[LibraryDefinition, ...] = (
    LibraryDefinition("start", "TanStack Start", "tanstack/router"),
    LibraryDefinition(
        "router", "TanStack Router", "tanstack/router", ("react-location",)
    ),
    LibraryDefinition("query", "TanStack Query", "tanstack/query", ("react-query",)),
    LibraryDefinition("table", "TanStack Table", "tanstack/table", ("react-table",)),
    LibraryDefinition("form", "TanStack Form", "tanstack/form"),
    LibraryDefinition(
        "virtual", "TanStack Virtual", "tanstack/virtual", ("react-virtual",)
    ),
    LibraryDefinition("ranger", "TanStack Ranger", "tanstack/ranger"),
    LibraryDefinition("store", "TanStack Store", "tanstack/store"),
    LibraryDefinition("pacer", "TanStack Pacer", "tanstack/pacer"),
    LibraryDefinition("db", "TanStack DB", "tanstack/db"),
    LibraryDefinition("config", "TanStack Config", "tanstack/config"),
    LibraryDefinition("react-charts", "React Charts", "tanstack/react-charts"),
    LibraryDefinition(
        "create-tsrouter-app", "Create TS Router App", "tanstack/create-tsrouter-app"
    ),
    LibraryDefinition("devtools", "TanStack Devtools", "tanstack/devtools"),
)

LIBRARIES_BY_ID = {library.id: library for library in LIBRARIES}


def get_library(library_id: str) -> LibraryDefinition | None:
    return LIBRARIES_BY_ID.get(library_id)


def legacy_package_names(
    libraries: tuple[LibraryDefinition, ...] = LIBRARIES,
) -> list[str]:
    return [name for library in libraries for name in library.legacy_packages]


def library_repos(libraries: tuple[LibraryDefinition, ...] = LIBRARIES) -> list[str]:
    seen: dict[str, None] = {}
    for library in libraries:
        seen.setdefault(library.repo, None)
    return list(seen)


@dataclass(frozen=True)
class MatcherRule:
    description: str
    predicate: Callable[[str], bool]
    library_id: str
    is_legacy: bool = False


@dataclass(frozen=True)
class LibraryMatch:
    library_id: str
    is_legacy: bool
    rule: str


def build_library_rules(
    org: str, libraries: tuple[LibraryDefinition, ...] = LIBRARIES
) -> list[MatcherRule]:
    """Turn the catalogue into an ordered rule list for ``match_library``.

    Order: legacy exact names, explicit aliases, then for each library in
    catalogue order the scoped exact name, ``@org/<id>-*`` and the
    framework-prefixed ``*-<id>`` / ``*-<id>-*`` forms.
    """
    scope = f"@{org}/"
    rules: list[MatcherRule] = []

    for library in libraries:
        for legacy in library.legacy_packages:
            rules.append(
                MatcherRule(
                    f"legacy package {legacy}",
                    lambda name, legacy=legacy: name == legacy,
                    library.id,
                    is_legacy=True,
                )
            )

    aliases = {
        "react-charts": ("react-charts",),
        "create-tsrouter-app": ("create-router", "create-start"),
    }
    for library_id, alias_names in aliases.items():
        if library_id not in {library.id for library in libraries}:
            continue
        for alias in alias_names:
            rules.append(
                MatcherRule(
                    f"alias {scope}{alias}",
                    lambda name, alias=alias: name == f"{scope}{alias}"
                    or f"/{alias}" in name,
                    library_id,
                )
            )

    for library in libraries:
        lib_id = library.id
        rules.extend(
            [
                MatcherRule(
                    f"exact {scope}{lib_id}",
                    lambda name, lib_id=lib_id: name == f"{scope}{lib_id}",
                    lib_id,
                ),
                MatcherRule(
                    f"suffixed {scope}{lib_id}-*",
                    lambda name, lib_id=lib_id: name.startswith(f"{scope}{lib_id}-"),
                    lib_id,
                ),
                MatcherRule(
                    f"prefixed *-{lib_id}",
                    lambda name, lib_id=lib_id: name.startswith(scope)
                    and (f"-{lib_id}-" in name or name.endswith(f"-{lib_id}")),
                    lib_id,
                ),
            ]
        )
    return rules


def match_library(package_name: str, rules: list[MatcherRule]) -> LibraryMatch | None:
    for rule in rules:
        if rule.predicate(package_name):
            return LibraryMatch(
                library_id=rule.library_id,
                is_legacy=rule.is_legacy,
                rule=rule.description,
            )
    return None
