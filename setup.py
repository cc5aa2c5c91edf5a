"""Setup script for cv-analytics-pipeline package following Cosmic Python pattern."""

from setuptools import setup, find_namespace_packages

setup(
    name="cv-analytics-pipeline",
    version="1.0.0",
    description="CV Analytics - Event-driven webhook ingestion and correlation pipeline",
    author="CV Analytics Team",
    package_dir={"": "src"},
    packages=find_namespace_packages(
        where="src",
        include=["shared*", "ingestion*", "changefeed*", "queueing*", "analytics*"],
    ),
    py_modules=["config"],
    python_requires=">=3.11",
    install_requires=[
        "fastapi",
        "uvicorn[standard]",
        "pydantic",
        "sqlalchemy>=2.0,<2.1",
        "psycopg2-binary",
        "redis",
        "requests",
        "tenacity",
    ],
    extras_require={
        "test": [
            "pytest",
            "pytest-cov",
            "httpx",
            "fakeredis",
        ],
        "dev": [
            "black",
            "flake8",
            "mypy",
            "pre-commit",
        ],
    },
    entry_points={
        "console_scripts": [
            "cv-router-worker=changefeed.entrypoints.router_worker:main",
            "cv-batch-worker=analytics.entrypoints.batch_worker:main",
            "cv-change-sweeper=ingestion.entrypoints.change_sweeper:main",
        ],
    },
    classifiers=[
        "Development Status :: 4 - Beta",
        "Intended Audience :: Developers",
        "License :: OSI Approved :: MIT License",
        "Programming Language :: Python :: 3.11",
        "Topic :: System :: Distributed Computing",
    ],
)
