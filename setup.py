import pathlib
from setuptools import setup, find_namespace_packages

# The directory containing this file
HERE = pathlib.Path(__file__).parent

# The text of the README file
README = (HERE / "README.md").read_text()

# This call to setup() does all the work
setup(
    name="dynamicsfitter",
    version="0.0.1",
    description="Fits physically consistent body masses, inertias and motion to marker and force plate data",
    long_description=README,
    long_description_content_type="text/markdown",
    license="MIT",
    classifiers=[
        "License :: OSI Approved :: MIT License",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.8",
    ],
    package_dir={"": "src"},
    packages=find_namespace_packages(where="src"),
    py_modules=["exceptions", "memory_utils"],
    python_requires=">=3.8",
    install_requires=["numpy", "scipy", "casadi"],
    extras_require={
        "nimble": ["nimblephysics", "numpy<2"],
        "test": ["pytest"],
    },
)
