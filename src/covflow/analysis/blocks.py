"""Block tree construction for nested coverage roll-ups.

This module provides BlockTree, a directed forest over the BlockInfo records
of one file. Edges run from an enclosing block to the blocks nested inside
it, which allows:
- Depth: nesting level of each block (top-level blocks have depth 0)
- Roll-up: aggregating per-line counts from nested blocks into their parents
"""

import networkx as nx


class BlockTree:
    """Nesting forest of the blocks of one file.

    Attributes:
        graph: networkx DiGraph with one node per block id, edges parent -> child
        blocks: Block id to BlockInfo
    """
    def __init__(self, blocks) -> None:
        self.blocks = {b.id: b for b in blocks}
        self.graph = nx.DiGraph()
        for block in blocks:
            self.graph.add_node(block.id, kind=block.kind)
            if block.parent is not None:
                self.graph.add_edge(block.parent, block.id)
        if self.graph.number_of_nodes() and not nx.is_forest(self.graph):
            raise ValueError("block parents do not form a forest")

    def roots(self):
        return sorted(n for n in self.graph.nodes if self.graph.in_degree(n) == 0)

    def children(self, block_id):
        return sorted(self.graph.successors(block_id))

    def depth(self, block_id):
        """Number of enclosing blocks."""
        depth = 0
        node = block_id
        while True:
            parents = list(self.graph.predecessors(node))
            if not parents:
                return depth
            node = parents[0]
            depth += 1

    def rollup(self, lines, predicate):
        """Count lines satisfying a predicate per block, nested blocks included.

        Every block spans all lines of its nested blocks, so the count is taken
        directly over the block's line range; the postorder walk only checks
        that each parent count is at least the sum over its children.

        Args:
            lines: Iterable of line numbers to consider
            predicate: Callable taking a line number

        Returns:
            dict: Block id to count
        """
        selected = sorted(n for n in lines if predicate(n))
        counts = {}
        for root in self.roots():
            for node in nx.dfs_postorder_nodes(self.graph, root):
                block = self.blocks[node]
                counts[node] = sum(1 for n in selected if block.start_line <= n <= block.end_line)
                nested = sum(counts[c] for c in self.children(node))
                if counts[node] < nested:
                    raise ValueError("block %d has nested blocks outside its lines" % node)
        return counts
