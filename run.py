"""
Launcher for the M365 Admin Toolkit from a source checkout.

The checkout folder name usually contains hyphens, which prevents
`python -m <folder>` from resolving the package's relative imports. This
script registers the current directory as the `m365_admin` package and then
runs its CLI. An installed copy (`pip install .`) provides the
`m365-admin` command instead.

Usage (run from inside the project directory):
    python run.py health-score --profile contoso-prod
    python run.py profile list
"""
import importlib.util
import sys
import types
from pathlib import Path

if sys.platform == "win32":
    # Status lines use emoji; the default Windows console code page can't print them
    for stream in (sys.stdout, sys.stderr):
        if hasattr(stream, "reconfigure"):
            stream.reconfigure(encoding="utf-8", errors="replace")

PKG_NAME = "m365_admin"
pkg_dir = Path(__file__).resolve().parent

sys.path.insert(0, str(pkg_dir.parent))

# Register this directory as the package so `from .config import ...` resolves.
pkg_mod = types.ModuleType(PKG_NAME)
pkg_mod.__path__ = [str(pkg_dir)]
pkg_mod.__package__ = PKG_NAME
pkg_mod.__spec__ = importlib.util.spec_from_file_location(
    PKG_NAME,
    pkg_dir / "__init__.py",
    submodule_search_locations=[str(pkg_dir)],
)
sys.modules[PKG_NAME] = pkg_mod
assert pkg_mod.__spec__ is not None and pkg_mod.__spec__.loader is not None
pkg_mod.__spec__.loader.exec_module(pkg_mod)

main_spec = importlib.util.spec_from_file_location(
    f"{PKG_NAME}.__main__", pkg_dir / "__main__.py"
)
assert main_spec is not None and main_spec.loader is not None
main_mod = importlib.util.module_from_spec(main_spec)
main_mod.__package__ = PKG_NAME
sys.modules[f"{PKG_NAME}.__main__"] = main_mod
main_spec.loader.exec_module(main_mod)

# exec_module never runs the `if __name__ == "__main__"` block
sys.exit(main_mod.main())
