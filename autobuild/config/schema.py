"""Configuration schema using Pydantic."""

import os
from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

# Build platforms `nix flake show --all-systems` can report
ARCHITECTURES: tuple[str, ...] = (
    "aarch64-darwin",
    "aarch64-linux",
    "armv5tel-linux",
    "armv6l-linux",
    "armv7a-linux",
    "armv7l-linux",
    "i686-linux",
    "loongarch64-linux",
    "m68k-linux",
    "microblazeel-linux",
    "microblaze-linux",
    "mips64el-linux",
    "mips64-linux",
    "mipsel-linux",
    "mips-linux",
    "powerpc64le-linux",
    "powerpc64-linux",
    "powerpc-linux",
    "riscv32-linux",
    "riscv64-linux",
    "s390-linux",
    "s390x-linux",
    "x86_64-darwin",
    "x86_64-linux",
)


class RepoConfig(BaseModel):
    """A flake repository to monitor."""
    model_config = ConfigDict(frozen=True)

    url: str
    name: str = ""  # Local checkout name, derived from the URL when empty
    poll_interval_sec: int = Field(default=300, gt=0)
    schedule: str | None = None  # Cron expression, overrides poll_interval_sec
    branches: list[str] = Field(default_factory=list)  # Empty = all branches
    build_depth: int = Field(default=1, ge=1)
    credentials_file: str | None = None  # One line: username:password
    enabled: bool = True

    @field_validator("url")
    @classmethod
    def _url_not_empty(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("Repository url must not be empty")
        return value

    @field_validator("credentials_file")
    @classmethod
    def _empty_credentials_is_none(cls, value: str | None) -> str | None:
        return value or None

    @field_validator("schedule")
    @classmethod
    def _valid_cron(cls, value: str | None) -> str | None:
        if not value:
            return None
        from croniter import croniter
        if not croniter.is_valid(value):
            raise ValueError(f"Invalid cron expression '{value}'")
        return value

    @property
    def clone_url(self) -> str:
        """URL handed to git. Scheme-less URLs are treated as https."""
        if "://" in self.url or self.url.startswith("git@"):
            return self.url
        return f"https://{self.url}"

    @property
    def local_name(self) -> str:
        if self.name:
            return self.name
        bare = self.url.split("://", 1)[-1]
        return bare.replace("/", "_").replace(":", "_")


class ToolsConfig(BaseModel):
    """External tool invocation settings."""
    git: str = "git"
    nix: str = "nix"
    nix_options: list[str] = Field(
        default_factory=lambda: ["--extra-experimental-features", "nix-command flakes"]
    )
    git_timeout_sec: int = Field(default=600, gt=0)


class Config(BaseModel):
    """Root configuration for autobuild."""
    repos: list[RepoConfig] = Field(default_factory=list)
    dir: str = "/var/lib/nix_autobuild"
    supported_architectures: list[str] = Field(default_factory=list)
    n_build_threads: int = Field(default=0, ge=0)  # 0 = number of CPU cores
    rebuild_unchanged: bool = True
    max_error_bytes: int = Field(default=64 * 1024, gt=0)
    status_history: int = Field(default=200, ge=0)
    log_level: str = "INFO"
    tools: ToolsConfig = Field(default_factory=ToolsConfig)

    @field_validator("supported_architectures")
    @classmethod
    def _known_platforms(cls, value: list[str]) -> list[str]:
        unknown = [arch for arch in value if arch not in ARCHITECTURES]
        if unknown:
            raise ValueError(f"Unknown platform(s): {', '.join(unknown)}")
        return value

    @model_validator(mode="after")
    def _unique_repo_names(self) -> "Config":
        seen: set[str] = set()
        for repo in self.repos:
            if repo.local_name in seen:
                raise ValueError(f"Duplicate repository name '{repo.local_name}'")
            seen.add(repo.local_name)
        return self

    @property
    def data_path(self) -> Path:
        return Path(self.dir).expanduser()

    @property
    def checkout_dir(self) -> Path:
        return self.data_path / "repos"

    @property
    def status_path(self) -> Path:
        return self.data_path / "status.json"

    @property
    def build_pool_size(self) -> int:
        return self.n_build_threads or os.cpu_count() or 1
