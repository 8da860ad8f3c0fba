from setuptools import setup, find_packages

setup(
    name="vmbackup",
    version="0.2.0",
    description="libvirt VM snapshot and backup automation with age and count retention",
    author="Entro01",
    packages=find_packages(where="src"),
    package_dir={"": "src"},
    package_data={"vmbackup": ["default.yaml"]},
    install_requires=[
        "click>=8.0.0",
        "PyYAML>=6.0",
    ],
    extras_require={
        "test": [
            "pytest>=7.0",
        ],
    },
    entry_points={
        "console_scripts": [
            "vmbackup=vmbackup.cli:main",
        ],
    },
    python_requires=">=3.8",
)
