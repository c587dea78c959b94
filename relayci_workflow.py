# relayci_workflow.py
# Release pipeline for a native library with a Python wrapper:
#   verify (3 platforms) -> build-native (one library per platform)
#   -> package (wheel per platform, publish behind the release/dispatch gate)
from __future__ import annotations

from relayci import PUBLISH, PlatformIs, dispatch_input, download, group, matrix, on, pipeline, sh, upload

OSES = ["macos-latest", "windows-latest", "ubuntu-latest"]


def workflow():
    return pipeline(
        group(
            "verify",
            sh("Install Rust toolchain", "rustup toolchain install stable --profile minimal"),
            sh("Cargo check", "cargo check --workspace"),
            sh("Cargo fmt", "cargo fmt --all -- --check"),
            sh("Debug build", "cargo build --all-targets"),
            sh("Test", "cargo test --workspace"),
            matrix=matrix(os=OSES),
        ),
        group(
            "build-native",
            sh("Install Rust toolchain", 'rustup toolchain install "${MATRIX_TOOLCHAIN:-stable}" --profile minimal'),
            sh(
                "Build library",
                "sh ./build.sh",
                env={"BUILD_TOOLCHAIN": "stable"},
            ),
            upload("Upload library artifacts", "library", "target/release/${MATRIX_LIB}", key_axes=["os"]),
            needs=["verify"],
            matrix=matrix(
                include=[
                    {
                        "os": "ubuntu-latest",
                        "lib": "libaries_askar.so",
                        "container": "andrewwhitehead/manylinux2014-base",
                    },
                    {"os": "macos-latest", "lib": "libaries_askar.dylib", "toolchain": "stable"},
                    {"os": "windows-latest", "lib": "aries_askar.dll", "toolchain": "stable"},
                ]
            ),
        ),
        group(
            "package",
            sh("Install dependencies", "python -m pip install --upgrade pip setuptools wheel twine auditwheel"),
            download(
                "Fetch library artifacts",
                "build-native",
                "library",
                "wrappers/python/aries_askar/",
                key_axes=["os"],
            ),
            sh(
                "Build and test python package",
                'python setup.py bdist_wheel --python-tag=py3 --plat-name="$MATRIX_PLAT_NAME"'
                " && pip install pytest pytest-asyncio dist/*"
                " && python -m pytest",
                cwd="wrappers/python",
            ),
            sh("Auditwheel", "auditwheel show wrappers/python/dist/*", when=PlatformIs("Linux")),
            upload("Upload python package", "python", "dist/*", cwd="wrappers/python", key_axes=["os"]),
            sh(
                "Publish python package",
                "twine upload --skip-existing dist/*",
                cwd="wrappers/python",
                when=PUBLISH,
                requires_env=["TWINE_USERNAME", "TWINE_PASSWORD"],
            ),
            needs=["build-native"],
            matrix=matrix(
                os=OSES,
                **{"python-version": ["3.6"]},
                include=[
                    {"os": "ubuntu-latest", "plat-name": "manylinux2014_x86_64"},
                    {"os": "macos-latest", "plat-name": "macosx_10_9_x86_64"},
                    {"os": "windows-latest", "plat-name": "win_amd64"},
                ],
            ),
        ),
        name="aries-askar",
        triggers=on(
            push=["**"],
            pull_request=["main"],
            release_created=True,
            manual_dispatch=[
                dispatch_input("publish", description="Publish packages", required=True, default="false"),
            ],
        ),
    )
