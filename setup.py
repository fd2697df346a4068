from setuptools import setup

setup(
    name="host-snapshot",
    version="1.0",
    py_modules=["main", "models", "osquery_runner", "snapshot_collector", "server"],
    python_requires=">=3.9",
    install_requires=[
        "rich",
        "fastapi",
        "uvicorn",
    ],
    extras_require={
        "test": ["pytest", "httpx"],
    },
    entry_points={
        "console_scripts": [
            "host-snapshot=main:main",
            "host-snapshot-server=server:main",
        ],
    },
)
