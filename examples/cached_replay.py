"""Build twice against the in-memory runtime and show the second build is cached."""

from boxforge import BuildResult, Engine, Recipe
from boxforge.runtime import InMemoryRuntime


def build_twice() -> tuple[BuildResult, BuildResult]:
    recipe = Recipe().from_("alpine").env(LANG="C.UTF-8")
    with recipe.as_user("nobody"):
        recipe.run("whoami")
    recipe.run("touch /built").tag("demo:latest")

    runtime = InMemoryRuntime()
    engine = Engine(runtime)
    first = engine.execute(recipe.operations)
    second = engine.execute(recipe.operations)

    assert first.image == second.image
    print(f"image={second.image} hits={second.cache_hits} misses={second.cache_misses}")
    return first, second


if __name__ == "__main__":
    build_twice()
