from setuptools import setup, find_packages

setup(
    name="taskfleet",
    version="0.1.0",
    description="Coordination core for hierarchical fleets of task-processing workers",
    author="taskfleet Team",
    packages=find_packages(exclude=["tests", "tests.*"]),
    python_requires=">=3.10",
    install_requires=[
        "pyyaml>=6.0",
        "sqlalchemy>=2.0",
        "click>=8.0",
        "rich>=13.0",
        "python-dateutil>=2.8",
        "filelock>=4.2",
    ],
    extras_require={
        "test": [
            "pytest>=7.0",
        ],
    },
    entry_points={
        "console_scripts": [
            "taskfleet=taskfleet.cli:main",
        ],
    },
)
