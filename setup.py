from setuptools import find_packages, setup

setup(
    name="qvirgl",
    version="0.1.0",
    description="Build QEMU with virglrenderer GPU acceleration on macOS",
    packages=find_packages(exclude=["tests", "tests.*"]),
    license="AGPL-3.0-or-later",
    python_requires=">=3.11",
    install_requires=[
        "pydantic>=2",
        "toml",
        "humanize",
    ],
    extras_require={
        "test": ["pytest"],
    },
    package_data={
        "qvirgl.compat": ["threads.h", "ar-wrapper.sh"],
    },
    include_package_data=True,
    entry_points={
        "console_scripts": [
            "qvirgl-build = qvirgl.cli:main",
            "qvirgl-run = qvirgl.launch:run",
        ]
    },
)
