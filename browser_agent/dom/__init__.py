from .service import DomService, build_dom_tree
from .serializer import serialize
from .views import DOMElementNode, DOMState, DOMTextNode, SelectorMap

__all__ = ["DomService", "build_dom_tree", "serialize", "DOMElementNode", "DOMState", "DOMTextNode", "SelectorMap"]
