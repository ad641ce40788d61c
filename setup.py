"""
Ontology Engine - Setup Configuration
"""
from setuptools import setup, find_packages

# Core requirements
core_requirements = [
    "pydantic>=2.0.0",
    "pyyaml>=6.0.0",
    "boto3>=1.28.0",
    "botocore>=1.31.0",
    "python-dotenv>=1.0.0",
]

# Test requirements
test_requirements = [
    "pytest>=7.0.0",
    "pytest-cov>=4.0.0",
]

# Development requirements
dev_requirements = test_requirements + [
    "black>=23.0.0",
    "isort>=5.12.0",
    "flake8>=6.0.0",
    "mypy>=1.0.0",
]

setup(
    name="ontology-engine",
    version="1.0.0",
    author="Ontology Engine Contributors",
    author_email="",
    description="Ontology extraction from relational datasources: entities, column semantics, relationships and glossary",
    long_description=(
        "Extracts a business ontology from a relational datasource through a resumable "
        "nine-stage DAG, with column feature classification, relationship discovery and "
        "per-entity workflow tracking."
    ),
    long_description_content_type="text/plain",
    packages=find_packages(where="src"),
    package_dir={"": "src"},
    classifiers=[
        "Development Status :: 4 - Beta",
        "Intended Audience :: Developers",
        "License :: OSI Approved :: MIT License",
        "Operating System :: OS Independent",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.9",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "Programming Language :: Python :: 3.12",
        "Topic :: Database",
        "Topic :: Scientific/Engineering :: Artificial Intelligence",
    ],
    python_requires=">=3.9",
    install_requires=core_requirements,
    extras_require={
        "test": test_requirements,
        "dev": dev_requirements,
    },
    include_package_data=True,
    keywords=[
        "ontology",
        "database",
        "schema",
        "relationships",
        "bedrock",
        "claude",
    ],
)
