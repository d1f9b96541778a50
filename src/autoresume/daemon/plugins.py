"""Plugin discovery and hook dispatch.

A plugin is a `*.py` file or a package directory in the plugin directory whose
module defines a `PLUGIN` mapping:

    PLUGIN = {
        "name": "log-to-file",
        "version": "1.0.0",
        "description": "...",
        "hooks": {"onResumeSent": on_resume_sent},
    }

Hooks receive one dict argument and may be plain functions or coroutines.
Every call is bounded by the configured timeout. Coroutine hooks are
cancelled when it passes; plain functions run on a worker thread, so a slow
one is abandoned (its thread finishes on its own and the result is dropped).
A failing plugin only affects its own call.
"""
from __future__ import annotations

import asyncio
import importlib.util
import inspect
import logging
import sys
from dataclasses import dataclass, field
from pathlib import Path
from types import ModuleType
from typing import Any, Callable, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError

logger = logging.getLogger("autoresume.plugins")

HookName = Literal["onRateLimitDetected", "onResumeSent", "onStatusChange", "onDaemonStart", "onDaemonStop"]

VALID_HOOKS = ("onRateLimitDetected", "onResumeSent", "onStatusChange", "onDaemonStart", "onDaemonStop")


class PluginManifest(BaseModel):
    name: str = Field(min_length=1)
    version: str = Field(min_length=1)
    description: str = ""
    hooks: Dict[HookName, Callable[..., Any]] = Field(default_factory=dict)

    model_config = ConfigDict(extra="forbid")


@dataclass
class LoadedPlugin:
    manifest: PluginManifest
    path: Path
    module_name: str
    enabled: bool = True
    calls: int = 0
    failures: int = 0
    last_error: str = ""

    def describe(self) -> Dict[str, Any]:
        return {
            "name": self.manifest.name,
            "version": self.manifest.version,
            "description": self.manifest.description,
            "path": str(self.path),
            "enabled": self.enabled,
            "hooks": sorted(self.manifest.hooks.keys()),
            "calls": self.calls,
            "failures": self.failures,
            "last_error": self.last_error,
        }


@dataclass
class HookResults:
    hook: str
    success: int = 0
    failed: int = 0
    errors: List[str] = field(default_factory=list)


def _module_entry(path: Path) -> Optional[Path]:
    if path.is_dir():
        init = path / "__init__.py"
        return init if init.is_file() else None
    if path.suffix == ".py" and not path.name.startswith("_"):
        return path
    return None


class PluginRegistry:
    def __init__(self, directory: Path, *, hook_timeout_s: float = 30.0) -> None:
        self.directory = directory
        self.hook_timeout_s = float(hook_timeout_s)
        self._plugins: Dict[str, LoadedPlugin] = {}

    # -- discovery -----------------------------------------------------------

    def discover(self) -> List[Path]:
        if not self.directory.is_dir():
            return []
        found: List[Path] = []
        for child in sorted(self.directory.iterdir()):
            if child.name.startswith((".", "_")):
                continue
            if _module_entry(child) is not None:
                found.append(child)
        return found

    def load_all(self) -> Dict[str, int]:
        loaded = failed = 0
        for path in self.discover():
            if self.load(path):
                loaded += 1
            else:
                failed += 1
        if loaded or failed:
            logger.info(f"plugins: {loaded} loaded, {failed} failed from {self.directory}")
        return {"loaded": loaded, "failed": failed}

    def _import(self, path: Path, module_name: str) -> ModuleType:
        entry = _module_entry(path)
        if entry is None:
            raise ImportError(f"not a plugin module: {path}")
        search = [str(path)] if path.is_dir() else None
        spec = importlib.util.spec_from_file_location(module_name, entry, submodule_search_locations=search)
        if spec is None or spec.loader is None:
            raise ImportError(f"cannot load {entry}")
        module = importlib.util.module_from_spec(spec)
        sys.modules[module_name] = module
        try:
            spec.loader.exec_module(module)
        except BaseException:
            sys.modules.pop(module_name, None)
            raise
        return module

    def load(self, path: Path) -> bool:
        module_name = f"autoresume_plugin_{path.stem.replace('-', '_')}"
        try:
            module = self._import(path, module_name)
        except Exception as e:
            logger.error(f"plugin import failed: {path}: {type(e).__name__}: {e}")
            return False

        raw = getattr(module, "PLUGIN", None)
        if not isinstance(raw, dict):
            logger.error(f"plugin {path} has no PLUGIN mapping")
            sys.modules.pop(module_name, None)
            return False
        try:
            manifest = PluginManifest.model_validate(raw)
        except ValidationError as e:
            logger.error(f"plugin {path} manifest invalid: {e.error_count()} error(s): {e.errors()[0].get('msg')}")
            sys.modules.pop(module_name, None)
            return False

        if manifest.name in self._plugins:
            self.unload(manifest.name)
        self._plugins[manifest.name] = LoadedPlugin(manifest=manifest, path=path, module_name=module_name)
        logger.info(f"loaded plugin {manifest.name} {manifest.version}", extra={"plugin": manifest.name})
        return True

    def unload(self, name: str) -> bool:
        plugin = self._plugins.pop(name, None)
        if plugin is None:
            return False
        sys.modules.pop(plugin.module_name, None)
        logger.info(f"unloaded plugin {name}", extra={"plugin": name})
        return True

    def reload(self, name: str) -> bool:
        plugin = self._plugins.get(name)
        if plugin is None:
            return False
        self.unload(name)
        return self.load(plugin.path)

    # -- state ---------------------------------------------------------------

    def enable(self, name: str) -> bool:
        plugin = self._plugins.get(name)
        if plugin is None:
            return False
        plugin.enabled = True
        return True

    def disable(self, name: str) -> bool:
        plugin = self._plugins.get(name)
        if plugin is None:
            return False
        plugin.enabled = False
        return True

    def get(self, name: str) -> Optional[LoadedPlugin]:
        return self._plugins.get(name)

    def list_plugins(self) -> List[Dict[str, Any]]:
        return [p.describe() for p in self._plugins.values()]

    # -- dispatch ------------------------------------------------------------

    async def call_hook(self, hook: str, event: Optional[Dict[str, Any]] = None) -> HookResults:
        results = HookResults(hook=hook)
        if hook not in VALID_HOOKS:
            logger.warning(f"unknown hook: {hook}")
            return results
        payload = dict(event or {})
        for plugin in list(self._plugins.values()):
            if not plugin.enabled:
                continue
            fn = plugin.manifest.hooks.get(hook)  # type: ignore[call-overload]
            if fn is None:
                continue
            plugin.calls += 1
            try:
                if inspect.iscoroutinefunction(fn):
                    ret = fn(payload)
                else:
                    ret = await asyncio.wait_for(asyncio.to_thread(fn, payload), timeout=self.hook_timeout_s)
                if inspect.isawaitable(ret):
                    await asyncio.wait_for(ret, timeout=self.hook_timeout_s)
            except asyncio.TimeoutError:
                self._record_failure(plugin, hook, f"timed out after {self.hook_timeout_s:g}s", results)
            except Exception as e:
                self._record_failure(plugin, hook, f"{type(e).__name__}: {e}", results)
            else:
                results.success += 1
        return results

    def _record_failure(self, plugin: LoadedPlugin, hook: str, error: str, results: HookResults) -> None:
        plugin.failures += 1
        plugin.last_error = error
        msg = f"plugin '{plugin.manifest.name}' hook '{hook}' failed: {error}"
        results.failed += 1
        results.errors.append(msg)
        logger.error(msg, extra={"plugin": plugin.manifest.name, "hook": hook})
