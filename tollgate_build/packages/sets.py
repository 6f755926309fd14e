"""Package set assembly for Image Builder PACKAGES."""

from collections.abc import Iterable
from dataclasses import dataclass, field


@dataclass
class PackageSet:
    """Ordered, deduplicated package tokens passed to the image tool."""

    baseline: list[str] = field(default_factory=list)
    device: list[str] = field(default_factory=list)
    custom: list[str] = field(default_factory=list)
    remove: list[str] = field(default_factory=list)

    @property
    def tokens(self) -> list[str]:
        """Return baseline, device and custom packages then removals.

        Duplicates keep their first position. A removed package is dropped
        from the install list and emitted once as '-name'.
        """
        removed = set(self.remove)
        tokens: list[str] = []
        seen: set[str] = set()

        for pkg in (*self.baseline, *self.device, *self.custom):
            if pkg in seen or pkg in removed:
                continue
            seen.add(pkg)
            tokens.append(pkg)

        for pkg in self.remove:
            token = f"-{pkg}"
            if token not in seen:
                seen.add(token)
                tokens.append(token)

        return tokens

    @property
    def joined(self) -> str:
        return " ".join(self.tokens)

    def __contains__(self, name: object) -> bool:
        return name in self.tokens


def assemble_package_set(
    baseline: Iterable[str],
    device: Iterable[str],
    custom: Iterable[str] = (),
    remove: Iterable[str] = (),
) -> PackageSet:
    """Assemble the package set for one build.

    Args:
        baseline: Packages every image carries.
        device: Device-specific packages.
        custom: Names of locally fetched custom packages.
        remove: Packages to exclude from the profile defaults.

    Returns:
        PackageSet instance.
    """
    return PackageSet(
        baseline=[p for p in baseline if p],
        device=[p for p in device if p],
        custom=[p for p in custom if p],
        remove=[p for p in remove if p],
    )


__all__ = ["PackageSet", "assemble_package_set"]
