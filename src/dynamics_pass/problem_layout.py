import enum
from typing import List, Dict, Tuple, Optional, NamedTuple
from dynamics_pass.config import DynamicsFitProblemConfig


class BlockKind(enum.Enum):
    MASSES = 'masses'
    COMS = 'coms'
    INERTIAS = 'inertias'
    BODY_SCALES = 'body_scales'
    MARKER_OFFSETS = 'marker_offsets'
    POSE = 'pose'
    VELOCITY = 'velocity'
    ACCELERATION = 'acceleration'


STATIC_KINDS = (BlockKind.MASSES, BlockKind.COMS, BlockKind.INERTIAS, BlockKind.BODY_SCALES,
                BlockKind.MARKER_OFFSETS)


class Block(NamedTuple):
    kind: BlockKind
    start: int
    size: int
    trial: int = -1
    timestep: int = -1

    @property
    def end(self) -> int:
        return self.start + self.size

    @property
    def indices(self) -> slice:
        return slice(self.start, self.start + self.size)


class ProblemLayout:
    """
    The schema of the flat decision vector: an ordered list of named blocks. Everything that needs to know where
    a quantity lives in the vector (flattening, bounds, gradient assembly, Jacobian columns) asks the layout.
    """
    def __init__(self):
        self.blocks: List[Block] = []
        self.size: int = 0
        self._index: Dict[Tuple[BlockKind, int, int], Block] = {}

    def add(self, kind: BlockKind, size: int, trial: int = -1, timestep: int = -1) -> Block:
        block = Block(kind, self.size, size, trial, timestep)
        self.blocks.append(block)
        self._index[(kind, trial, timestep)] = block
        self.size += size
        return block

    def find(self, kind: BlockKind, trial: int = -1, timestep: int = -1) -> Optional[Block]:
        return self._index.get((kind, trial, timestep))

    def static_size(self) -> int:
        return sum(block.size for block in self.blocks if block.kind in STATIC_KINDS)

    def trial_blocks(self, trial: int) -> List[Block]:
        return [block for block in self.blocks if block.trial == trial]

    def describe(self, index: int) -> str:
        for block in self.blocks:
            if block.start <= index < block.end:
                name = block.kind.value
                if block.trial >= 0:
                    name += f' (trial {block.trial}, t={block.timestep})'
                return f'{name}[{index - block.start}]'
        return f'<out of range {index}>'

    @staticmethod
    def build(config: DynamicsFitProblemConfig,
              num_scale_groups: int,
              group_scale_dim: int,
              num_markers: int,
              num_dofs: int,
              trial_lengths: List[Tuple[int, int]]) -> 'ProblemLayout':
        """
        `trial_lengths` is a list of (trial index, number of frames), in the order the trials should be laid out.
        """
        layout = ProblemLayout()
        if config.include_masses:
            layout.add(BlockKind.MASSES, num_scale_groups)
        if config.include_coms:
            layout.add(BlockKind.COMS, num_scale_groups * 3)
        if config.include_inertias:
            layout.add(BlockKind.INERTIAS, num_scale_groups * 6)
        if config.include_body_scales:
            layout.add(BlockKind.BODY_SCALES, group_scale_dim)
        if config.include_marker_offsets:
            layout.add(BlockKind.MARKER_OFFSETS, num_markers * 3)
        if config.include_poses:
            for trial, num_frames in trial_lengths:
                for t in range(num_frames - 2):
                    layout.add(BlockKind.POSE, num_dofs, trial, t)
                    layout.add(BlockKind.VELOCITY, num_dofs, trial, t)
                    layout.add(BlockKind.ACCELERATION, num_dofs, trial, t)
                layout.add(BlockKind.POSE, num_dofs, trial, num_frames - 2)
                layout.add(BlockKind.VELOCITY, num_dofs, trial, num_frames - 2)
                layout.add(BlockKind.POSE, num_dofs, trial, num_frames - 1)
        return layout
