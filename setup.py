import setuptools

with open("sleeve/.version") as f:
    version = f.read().strip()

setuptools.setup(
    name="sleeve",
    version=version,
    python_requires=">=3.11.0",
    license="Apache-2.0",
    entry_points={"console_scripts": ["sleeve = sleeve.__main__:main"]},
    packages=["sleeve"],
    package_data={"sleeve": ["*.sql", ".version"]},
    install_requires=[
        "appdirs",
        "cachetools",
        "click",
        "mutagen",
    ],
    extras_require={
        "test": ["pytest"],
    },
)
