from setuptools import setup, find_packages

setup(
    name="email-open-tracker",
    version="0.1.0",
    description="Email open tracking pixel server with best-effort forward detection",
    author="",
    author_email="",
    packages=find_packages(where="src"),
    package_dir={"": "src"},
    python_requires=">=3.8",
    install_requires=[
        "Flask>=2.3.0",
        "email-validator>=2.0.0",
        "geoip2>=4.6.0",
        "python-dotenv>=0.19.0",
        "click>=8.0.0",
        "tabulate>=0.9.0",
        "pydantic>=2.0.0",
        "pydantic-settings>=2.0.0",
        "PyYAML>=5.4.0",
    ],
    extras_require={
        "test": [
            "pytest>=7.0.0",
        ],
    },
    entry_points={
        "console_scripts": [
            "opentrack=opentrack.cli:main",
        ],
    },
)
