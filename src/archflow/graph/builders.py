"""
Builders from plain layer specs and framework graphs (PyTorch FX) into
ArchitectureGraph.
"""

from __future__ import annotations

from typing import Any, Callable, Dict, List, Mapping, Optional, Set

from .ir import ArchitectureGraph, Component, ComponentKind, Edge

KindResolver = Callable[[Any], ComponentKind]

_KIND_HINTS = (
    ("attention", ComponentKind.ATTENTION),
    ("norm", ComponentKind.NORMALIZATION),
    ("embedding", ComponentKind.EMBEDDING),
    ("router", ComponentKind.ROUTER),
    ("gate", ComponentKind.ROUTER),
    ("identity", ComponentKind.SKIP_PATH),
    ("linear", ComponentKind.FEED_FORWARD),
    ("conv", ComponentKind.FEED_FORWARD),
    ("mlp", ComponentKind.FEED_FORWARD),
    ("feedforward", ComponentKind.FEED_FORWARD),
)


def from_layer_specs(
    specs: Mapping[str, Mapping[str, Any]],
    *,
    inputs: Optional[List[str]] = None,
    outputs: Optional[List[str]] = None,
    metadata: Optional[Mapping[str, Any]] = None,
) -> ArchitectureGraph:
    """
    Build a graph from a ``{component_id: spec}`` mapping.

    Each spec accepts ``kind`` (a ``ComponentKind`` value), ``inputs`` (list of
    producer ids), ``skip_inputs`` (producer ids reached through a tagged skip
    edge) and ``config`` (declared widths, head counts, ...).
    """
    components: List[Component] = []
    edges: List[Edge] = []
    for name, spec in specs.items():
        components.append(
            Component(
                id=name,
                kind=ComponentKind(spec.get("kind", ComponentKind.OTHER)),
                config=dict(spec.get("config", {})),
            )
        )
        for producer in spec.get("inputs", []):
            edges.append(Edge(producer=producer, consumer=name))
        for producer in spec.get("skip_inputs", []):
            edges.append(Edge(producer=producer, consumer=name, skip=True))
    return ArchitectureGraph(
        components, edges, inputs=inputs, outputs=outputs, metadata=metadata
    )


def infer_kind(module: Any) -> ComponentKind:
    """Guess the component kind from a module's class name."""
    name = type(module).__name__.lower()
    for hint, kind in _KIND_HINTS:
        if hint in name:
            return kind
    return ComponentKind.OTHER


def _sanitize(value: Any) -> Any:
    if isinstance(value, (str, int, float, bool, type(None))):
        return value
    if isinstance(value, (list, tuple)):
        return [_sanitize(v) for v in value]
    if isinstance(value, dict):
        return {str(k): _sanitize(v) for k, v in value.items()}
    return repr(value)


def _module_config(module: Any) -> Dict[str, Any]:
    config: Dict[str, Any] = {"module_type": type(module).__qualname__}
    for attr in (
        "in_features",
        "out_features",
        "in_channels",
        "out_channels",
        "embed_dim",
        "num_heads",
        "num_embeddings",
        "embedding_dim",
        "normalized_shape",
    ):
        if hasattr(module, attr):
            config[attr] = _sanitize(getattr(module, attr))

    in_width = config.get("in_features", config.get("in_channels", config.get("embed_dim")))
    out_width = config.get(
        "out_features",
        config.get("out_channels", config.get("embed_dim", config.get("embedding_dim"))),
    )
    shape = config.get("normalized_shape")
    if shape and in_width is None:
        in_width = out_width = shape[-1]
    if in_width is not None:
        config["in_width"] = in_width
    if out_width is not None:
        config["out_width"] = out_width
    return config


def from_pytorch_fx(
    fx_graph_module: Any,
    *,
    kind_resolver: Optional[KindResolver] = None,
    metadata: Optional[Mapping[str, Any]] = None,
) -> ArchitectureGraph:
    """
    Convert a ``torch.fx.GraphModule`` into an ``ArchitectureGraph``.

    Every ``call_module`` node becomes a component; functional ops in between
    are contracted away. When a consumer reads two producers and one of them
    is an ancestor of the other, the edge from the ancestor is tagged as a
    skip edge (the residual path).
    """
    try:
        from torch.fx.graph_module import GraphModule
    except ModuleNotFoundError as exc:  # pragma: no cover - handled in tests
        raise ModuleNotFoundError(
            "from_pytorch_fx requires PyTorch to be installed."
        ) from exc

    if not isinstance(fx_graph_module, GraphModule):
        raise TypeError(
            "from_pytorch_fx expects a torch.fx.GraphModule. "
            f"Received: {type(fx_graph_module)!r}"
        )

    resolve = kind_resolver or infer_kind
    gm: GraphModule = fx_graph_module

    sources: Dict[str, Set[str]] = {}
    ancestors: Dict[str, Set[str]] = {}
    producers_of: Dict[str, Set[str]] = {}
    components: List[Component] = []
    call_counts: Dict[str, int] = {}
    fx_outputs: List[str] = []

    for fx_node in gm.graph.nodes:
        upstream: Set[str] = set()
        for inp in fx_node.all_input_nodes:
            upstream |= sources.get(inp.name, set())

        if fx_node.op == "call_module":
            target = str(fx_node.target)
            count = call_counts.get(target, 0)
            call_counts[target] = count + 1
            comp_id = target if count == 0 else f"{target}#{count}"

            module = gm.get_submodule(target)
            config = _module_config(module)
            config["fx_node"] = fx_node.name
            config["module_path"] = target
            config["call_index"] = count
            components.append(Component(id=comp_id, kind=resolve(module), config=config))

            producers_of[comp_id] = upstream
            reach = set(upstream)
            for parent in upstream:
                reach |= ancestors[parent]
            ancestors[comp_id] = reach
            sources[fx_node.name] = {comp_id}
        elif fx_node.op == "output":
            fx_outputs = sorted(upstream)
        else:
            sources[fx_node.name] = upstream

    edges: List[Edge] = []
    for consumer, producers in producers_of.items():
        for producer in sorted(producers):
            skip = any(producer in ancestors[other] for other in producers if other != producer)
            edges.append(Edge(producer=producer, consumer=consumer, skip=skip))

    return ArchitectureGraph(
        components,
        edges,
        metadata={**dict(metadata or {}), "framework": "torch_fx", "fx_outputs": fx_outputs},
    )
