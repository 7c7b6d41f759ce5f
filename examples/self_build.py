"""Build a toolchain image with a throwaway test stage and a slim release."""

import os

from boxforge import CancelToken, Engine, EngineConfig, FileLayerCache, HostEnv, Recipe, get_runtime, interrupt_on_signal

GO_VERSION = "1.22.5"
PACKAGES = ["build-essential", "git", "curl", "ca-certificates"]


def build_recipe() -> Recipe:
    quiet = "-qq" if os.environ.get("CI_BUILD") else ""
    recipe = Recipe().from_("debian:bookworm")

    with recipe.after():
        recipe.tag("boxforge/box:main")
        recipe.save("box.oci.tar", format="oci")

    with recipe.skip():
        recipe.workdir("/")
        recipe.run(f"apt-get update {quiet}")
        recipe.run(f"apt-get install -y {quiet} {' '.join(PACKAGES)}")
        recipe.run(f"curl -sSL https://go.dev/dl/go{GO_VERSION}.linux-amd64.tar.gz | tar -xz -C /usr/local")
        recipe.env(PATH="/usr/local/sbin:/usr/local/bin:/usr/sbin:/usr/bin:/sbin:/bin:/usr/local/go/bin", GOPATH="/go")
        recipe.copy(".", "/go/src/box", ignore_file=".boxignore")
        with recipe.in_workdir("/go/src/box"):
            recipe.run("make install")
        recipe.workdir("/go/src/box")
        recipe.set_exec(entrypoint=["/go/bin/box"], cmd=["make", "test"])
        recipe.tag(HostEnv("TEST_TAG", default="box-test"))

    recipe.run("mv /go/bin/box /box")
    recipe.workdir("/")
    recipe.set_exec(entrypoint=["/box"], cmd=[])
    return recipe


def main() -> None:
    engine = Engine(
        get_runtime(os.environ.get("BOXFORGE_RUNTIME", "docker")),
        cache=FileLayerCache(".boxforge/cache"),
        config=EngineConfig(exec_timeout=1800),
    )
    with interrupt_on_signal(CancelToken()) as token:
        result = engine.execute(build_recipe().operations, cancel=token)
    result.write_report(".boxforge/report.json")


if __name__ == "__main__":
    main()
