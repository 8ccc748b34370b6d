"""
Barnes-Hut quadtree over 2-D points.

The tree is built level by level with numpy: at level ``l`` every point falls
into one of ``4**l`` square cells, and only occupied cells become nodes. Each
node stores its point count and centre of mass. Repulsive forces are then
evaluated for all points at once by walking (point, node) pairs down the tree;
a node far enough from a point (``width / distance < theta``) is summarized by
its centre of mass instead of being opened.
"""
import numpy as np

MAX_DEPTH = 20

# Points traversed together; bounds the size of the (point, node) frontier
CHUNK_SIZE = 4096


class QuadTree:
    """Level-wise quadtree with per-node counts and centres of mass."""

    def __init__(self, points: np.ndarray, max_depth: int = MAX_DEPTH):
        self.points = np.asarray(points, dtype=np.float64)
        self.n = len(self.points)

        origin = self.points.min(axis=0)
        span = float((self.points.max(axis=0) - origin).max())
        size = span * (1.0 + 1e-9) if span > 0 else 1.0
        unit = (self.points - origin) / size

        counts, coms, levels, point_nodes = [], [], [], []
        widths = []
        children, child_start, child_end = [], [], []
        offset = 0

        for level in range(max_depth + 1):
            cells = 1 << level
            ix = np.minimum((unit * cells).astype(np.int64), cells - 1)
            _, inverse = np.unique(ix[:, 0] * cells + ix[:, 1], return_inverse=True)
            inverse = inverse.reshape(-1)
            m = int(inverse.max()) + 1

            count = np.bincount(inverse, minlength=m)
            com = np.stack([
                np.bincount(inverse, weights=self.points[:, 0], minlength=m),
                np.bincount(inverse, weights=self.points[:, 1], minlength=m),
            ], axis=1) / count[:, None]

            if level > 0:
                # Link this level's nodes to their parents as contiguous child ranges
                representative = np.empty(m, dtype=np.int64)
                representative[inverse] = np.arange(self.n)
                parents = point_nodes[-1][representative]
                order = np.argsort(parents, kind="stable")
                parent_offset = offset - len(counts[-1])
                per_parent = np.bincount(parents - parent_offset, minlength=len(counts[-1]))
                base = sum(len(c) for c in children)
                ends = base + np.cumsum(per_parent)
                child_start[-1] = ends - per_parent
                child_end[-1] = ends
                children.append(offset + order)

            counts.append(count)
            coms.append(com)
            levels.append(np.full(m, level, dtype=np.int64))
            point_nodes.append(inverse + offset)
            widths.append(size / cells)
            child_start.append(np.zeros(m, dtype=np.int64))
            child_end.append(np.zeros(m, dtype=np.int64))
            offset += m

            if count.max() == 1:
                break

        self.depth = len(counts) - 1
        self.count = np.concatenate(counts).astype(np.float64)
        self.com = np.concatenate(coms)
        self.level = np.concatenate(levels)
        self.width = np.array(widths)
        self.point_node = np.stack(point_nodes)
        self.child_start = np.concatenate(child_start)
        self.child_end = np.concatenate(child_end)
        self.children = (
            np.concatenate(children) if children else np.zeros(0, dtype=np.int64)
        )

    @property
    def node_count(self) -> int:
        return len(self.count)

    def repulsion(self, theta: float):
        """
        Approximate the unnormalized t-SNE repulsive forces.

        For each point i computes ``sum_j q_ij^2 (y_i - y_j)`` and the kernel
        total ``Z = sum_{i != j} q_ij`` with ``q_ij = 1 / (1 + |y_i - y_j|^2)``.

        Returns:
            Tuple of (forces array of shape (n, 2), Z)
        """
        forces = np.zeros((self.n, 2))
        kernel_total = 0.0
        theta2 = theta * theta

        for start in range(0, self.n, CHUNK_SIZE):
            stop = min(self.n, start + CHUNK_SIZE)
            local_n = stop - start
            point = np.arange(start, stop)
            node = np.zeros(local_n, dtype=np.int64)

            while point.size:
                level = self.level[node]
                count = self.count[node]
                contains = self.point_node[level, point] == node
                own = contains.astype(np.float64)
                rest = count - own
                live = rest > 0

                # Cell aggregate excluding the point itself
                safe = np.where(live, rest, 1.0)
                centre = (
                    self.com[node] * count[:, None] - own[:, None] * self.points[point]
                ) / safe[:, None]
                diff = self.points[point] - centre
                dist2 = np.einsum("ij,ij->i", diff, diff)

                width = self.width[level]
                far = ~contains & ((count == 1) | (width * width < theta2 * dist2))
                leaf = level == self.depth
                accept = live & (far | leaf)
                expand = live & ~accept

                if accept.any():
                    local = point[accept] - start
                    q = 1.0 / (1.0 + dist2[accept])
                    weight = rest[accept] * q
                    kernel_total += weight.sum()
                    force = weight * q
                    forces[start:stop, 0] += np.bincount(
                        local, weights=force * diff[accept, 0], minlength=local_n
                    )
                    forces[start:stop, 1] += np.bincount(
                        local, weights=force * diff[accept, 1], minlength=local_n
                    )

                if not expand.any():
                    break

                parent = node[expand]
                first = self.child_start[parent]
                lengths = self.child_end[parent] - first
                total = int(lengths.sum())
                skip = np.repeat(np.cumsum(lengths) - lengths, lengths)
                point = np.repeat(point[expand], lengths)
                node = self.children[np.repeat(first, lengths) + np.arange(total) - skip]

        return forces, kernel_total
