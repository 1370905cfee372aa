from setuptools import setup, find_packages

setup(
    name="gitops-controller",
    version="0.1.0",
    packages=find_packages(exclude=["tests", "tests.*"]),
    install_requires=[
        "kubernetes>=28.1.0",
        "PyYAML>=6.0",
        "click>=8.1.0",
        "rich>=13.7.0",
    ],
    extras_require={
        "test": [
            "pytest>=7.4.0",
        ],
    },
    entry_points={
        "console_scripts": [
            "gitops-controller=gitops_controller.cli:cli",
        ],
    },
    description="GitOps controller - continuous reconciliation of Kubernetes clusters with Git",
    python_requires=">=3.8",
)
