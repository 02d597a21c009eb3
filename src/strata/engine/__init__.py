"""Engine layer: source registry, model graph, compiler, materializer, quality checks."""
