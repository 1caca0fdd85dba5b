"""Packaging setup with an optional Cython build."""

import os
import sys
from pathlib import Path

from setuptools import Extension, find_packages, setup


# Accept several truthy values for CYTHONIZE (so "True", True, "1", "true" all work)
CYTHONIZE_RAW = os.getenv("CYTHONIZE", "0")
CYTHONIZE = str(CYTHONIZE_RAW).strip().lower() in ("1", "true", "yes", "on")

if CYTHONIZE:
    from Cython.Build import cythonize

dist_name = "FOD-Monitor"
package_dir = "fod_monitor"
version = Path("VERSION.txt").read_text().strip()

install_requires = [
    "numpy>=1.24",
    "opencv-python>=4.8",
    "onnxruntime>=1.16",
    "loguru>=0.7",
    "psutil>=5.9",
    "PyYAML>=6.0",
]

extras_require = {
    "gpu": ["onnxruntime-gpu>=1.16"],
    "test": ["pytest>=7.4", "pytest-benchmark>=4.0"],
}


def list_py_files(package_dir: str | Path) -> list[str]:
    """Return Python source files under the package directory."""
    root = Path(package_dir)
    return [str(path) for path in root.rglob("*.py") if path.name != "__init__.py"]


setup_kwargs = {
    "name": dist_name,
    "version": version,
    "description": "Multi-camera foreign object detection with ONNX Runtime",
    "python_requires": ">=3.10",
    "install_requires": install_requires,
    "extras_require": extras_require,
    "packages": find_packages(include=[package_dir, f"{package_dir}.*"]),
    "entry_points": {"console_scripts": ["fod-monitor=fod_monitor.app:main"]},
    "zip_safe": False,
}

if CYTHONIZE:
    if sys.platform == "win32":
        extra_compile_args = ["/O2", "/MD"]
        extra_link_args = ["/OPT:REF", "/OPT:ICF"]
    else:
        extra_compile_args = ["-O3", "-fvisibility=hidden"]
        extra_link_args = []

    extensions = [
        Extension(
            py_file.replace(os.path.sep, ".")[:-3],
            [py_file],
            extra_compile_args=extra_compile_args,
            extra_link_args=extra_link_args,
        )
        for py_file in list_py_files(package_dir)
    ]
    setup_kwargs["ext_modules"] = cythonize(
        extensions,
        compiler_directives={
            "language_level": "3",
            "emit_code_comments": False,
            "embedsignature": False,
            "binding": False,
            "annotation_typing": False,
        },
    )
    setup_kwargs["package_data"] = {"": ["*.c", "*.so", "*.pyd"]}

setup(**setup_kwargs)
