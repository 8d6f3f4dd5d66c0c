"""
Host hardware profiling (CPU, RAM, GPU memory)
"""

import asyncio
import json
import logging
import os
import platform
import re
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import List, Optional, Tuple

# Optional dependencies
try:
    import psutil
    HAS_PSUTIL = True
except ImportError:
    HAS_PSUTIL = False

try:
    import GPUtil
    HAS_GPUTIL = True
except ImportError:
    HAS_GPUTIL = False

logger = logging.getLogger(__name__)

GB = 1024 ** 3
# Share of unified memory Apple Silicon lets the GPU address
UNIFIED_MEMORY_GPU_SHARE = 0.75


@dataclass(frozen=True)
class CPUInfo:
    """CPU information"""
    name: str
    cores: Optional[int]
    threads: Optional[int]
    arch: str


@dataclass(frozen=True)
class GPUInfo:
    """GPU information"""
    name: str
    vram: float
    vendor: str
    discrete: bool = True
    driver: Optional[str] = None
    note: Optional[str] = None


@dataclass(frozen=True)
class HardwareProfile:
    """
    One hardware snapshot for the session.

    Fields that could not be read are None. gpu_detected is False when every
    GPU probe failed, so an empty gpus tuple means "unknown" rather than
    "no GPU". Readings that change without a hardware change (free RAM,
    capture time) are excluded from equality.
    """
    os: str
    arch: str
    cpu: CPUInfo
    total_ram_gb: Optional[float]
    gpus: Tuple[GPUInfo, ...] = ()
    gpu_detected: bool = True
    source: str = "auto-detected"
    notes: Optional[str] = None
    available_ram_gb: Optional[float] = field(default=None, compare=False)
    collected_at: datetime = field(
        default_factory=lambda: datetime.now(timezone.utc), compare=False
    )

    @property
    def has_discrete_gpu(self) -> bool:
        return any(gpu.discrete for gpu in self.gpus)

    @property
    def vram_gb(self) -> Optional[float]:
        """Largest GPU-addressable memory; 0 without a GPU, None when GPU detection failed"""
        if not self.gpus:
            return 0.0 if self.gpu_detected else None
        return max(gpu.vram for gpu in self.gpus)

    @property
    def primary_gpu(self) -> Optional[GPUInfo]:
        if not self.gpus:
            return None
        return max(self.gpus, key=lambda gpu: gpu.vram)

    def to_dict(self) -> dict:
        return {
            "os": self.os,
            "arch": self.arch,
            "cpu": {
                "name": self.cpu.name,
                "cores": self.cpu.cores,
                "threads": self.cpu.threads,
                "arch": self.cpu.arch,
            },
            "total_ram_gb": self.total_ram_gb,
            "available_ram_gb": self.available_ram_gb,
            "gpus": [
                {
                    "name": gpu.name,
                    "vram": gpu.vram,
                    "vendor": gpu.vendor,
                    "discrete": gpu.discrete,
                    "driver": gpu.driver,
                    "note": gpu.note,
                }
                for gpu in self.gpus
            ],
            "gpu_detected": self.gpu_detected,
            "source": self.source,
            "notes": self.notes,
            "collected_at": self.collected_at.isoformat(),
        }


class HardwareProfiler:
    """Detects local hardware; every detect() fully replaces the last snapshot"""

    def __init__(self):
        self._latest: Optional[HardwareProfile] = None
        self._detected: Optional[HardwareProfile] = None

    @property
    def latest(self) -> Optional[HardwareProfile]:
        return self._latest

    async def detect(self) -> HardwareProfile:
        """Re-reads every subsystem. A failing subsystem yields None, not an error."""
        logger.info("Detecting hardware configuration...")

        cpu_task = asyncio.create_task(self._detect_cpu())
        ram_task = asyncio.create_task(self._detect_ram())
        gpu_task = asyncio.create_task(self._detect_gpus())

        cpu_info = await cpu_task
        total_ram, available_ram = await ram_task
        gpus = await gpu_task

        profile = HardwareProfile(
            os=platform.system() or "Unknown",
            arch=platform.machine() or "Unknown",
            cpu=cpu_info,
            total_ram_gb=total_ram,
            available_ram_gb=available_ram,
            gpus=tuple(gpus or ()),
            gpu_detected=gpus is not None,
        )
        self._detected = profile
        self._latest = profile
        logger.info(
            f"Hardware: {cpu_info.cores or '?'} cores, {total_ram or '?'} GB RAM, "
            f"{len(gpus) if gpus is not None else '?'} GPU(s)"
        )
        return profile

    def override(self, **fields) -> HardwareProfile:
        """Layer manual values over the last detected profile"""
        base = self._detected or self._latest
        if base is None:
            raise RuntimeError("Hardware not detected. Call detect() first.")
        if "gpus" in fields:
            fields.setdefault("gpu_detected", True)
        profile = replace(
            base, source="manual", collected_at=datetime.now(timezone.utc), **fields
        )
        self._latest = profile
        return profile

    async def clear_override(self) -> HardwareProfile:
        return await self.detect()

    async def _detect_cpu(self) -> CPUInfo:
        """Detects CPU information with platform-specific name lookup"""
        cores, threads = self._get_cpu_counts()
        name = platform.processor() or "Unknown CPU"

        try:
            if platform.system() == "Linux":
                name = await self._get_linux_cpu_name() or name
            elif platform.system() == "Darwin":
                name = await self._get_macos_cpu_name() or name
        except Exception as e:
            logger.warning(f"Failed to get detailed CPU info: {e}")

        return CPUInfo(name=name, cores=cores, threads=threads, arch=platform.machine())

    def _get_cpu_counts(self) -> Tuple[Optional[int], Optional[int]]:
        try:
            if HAS_PSUTIL:
                threads = psutil.cpu_count(logical=True)
                return psutil.cpu_count(logical=False) or threads, threads
            count = os.cpu_count()
            return count, count
        except Exception as e:
            logger.warning(f"CPU core detection failed: {e}")
            return None, None

    async def _get_linux_cpu_name(self) -> Optional[str]:
        try:
            with open("/proc/cpuinfo", "r") as f:
                for line in f:
                    if "model name" in line:
                        return line.split(":", 1)[1].strip()
        except OSError:
            pass
        return None

    async def _get_macos_cpu_name(self) -> Optional[str]:
        return await self._sysctl("machdep.cpu.brand_string")

    async def _sysctl(self, key: str) -> Optional[str]:
        try:
            proc = await asyncio.create_subprocess_exec(
                "sysctl", "-n", key,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
            stdout, _ = await proc.communicate()
            if proc.returncode == 0:
                return stdout.decode().strip()
        except Exception as e:
            logger.warning(f"sysctl {key} failed: {e}")
        return None

    async def _detect_ram(self) -> Tuple[Optional[float], Optional[float]]:
        """Returns (total, available) system RAM in GB"""
        if HAS_PSUTIL:
            try:
                memory = psutil.virtual_memory()
                return round(memory.total / GB, 1), round(memory.available / GB, 1)
            except Exception as e:
                logger.warning(f"psutil RAM detection failed: {e}")

        try:
            if platform.system() == "Darwin":
                return await self._get_macos_ram(), None
            elif platform.system() == "Linux":
                return await self._get_linux_ram()
        except Exception as e:
            logger.warning(f"Platform-specific RAM detection failed: {e}")

        return None, None

    async def _get_macos_ram(self) -> Optional[float]:
        value = await self._sysctl("hw.memsize")
        if value and value.isdigit():
            return round(int(value) / GB, 1)
        return None

    async def _get_linux_ram(self) -> Tuple[Optional[float], Optional[float]]:
        total = available = None
        try:
            with open("/proc/meminfo", "r") as f:
                for line in f:
                    if line.startswith("MemTotal"):
                        total = round(int(line.split()[1]) / (1024 ** 2), 1)
                    elif line.startswith("MemAvailable"):
                        available = round(int(line.split()[1]) / (1024 ** 2), 1)
        except (OSError, ValueError, IndexError) as e:
            logger.warning(f"Failed to get Linux RAM: {e}")
        return total, available

    async def _detect_gpus(self) -> Optional[List[GPUInfo]]:
        """
        Runs every applicable GPU probe concurrently and de-duplicates by name.

        Returns None when no probe completed, since an empty list would claim
        the host has no GPU.
        """
        tasks = []

        if HAS_GPUTIL:
            tasks.append(asyncio.create_task(self._detect_nvidia_gputil()))
        if platform.system() != "Darwin":
            tasks.append(asyncio.create_task(self._detect_nvidia_smi()))
        if platform.system() == "Linux":
            tasks.append(asyncio.create_task(self._detect_amd_gpus()))
        if platform.system() == "Darwin":
            tasks.append(asyncio.create_task(self._detect_apple_gpus()))

        results = await asyncio.gather(*tasks, return_exceptions=True)

        gpus: List[GPUInfo] = []
        seen_names = set()
        completed = 0
        for result in results:
            if isinstance(result, Exception):
                logger.warning(f"GPU detection failed: {result}")
                continue
            completed += 1
            for gpu in result:
                if gpu.name not in seen_names:
                    gpus.append(gpu)
                    seen_names.add(gpu.name)
        return gpus if completed else None

    async def _detect_nvidia_gputil(self) -> List[GPUInfo]:
        try:
            return [
                GPUInfo(
                    name=gpu.name,
                    vram=round(gpu.memoryTotal / 1024, 1),
                    vendor="NVIDIA",
                    driver=gpu.driver,
                )
                for gpu in GPUtil.getGPUs()
            ]
        except Exception as e:
            logger.warning(f"GPUtil detection failed: {e}")
            return []

    async def _detect_nvidia_smi(self) -> List[GPUInfo]:
        try:
            proc = await asyncio.create_subprocess_exec(
                "nvidia-smi", "--query-gpu=name,memory.total",
                "--format=csv,noheader,nounits",
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
            stdout, _ = await proc.communicate()
        except (OSError, ValueError) as e:
            logger.debug(f"nvidia-smi not available: {e}")
            return []

        gpus = []
        if proc.returncode == 0:
            for line in stdout.decode().strip().splitlines():
                parts = [part.strip() for part in line.split(",")]
                if len(parts) == 2:
                    try:
                        vram = round(float(parts[1]) / 1024, 1)
                    except ValueError:
                        continue
                    gpus.append(GPUInfo(name=parts[0], vram=vram, vendor="NVIDIA"))
        return gpus

    async def _detect_amd_gpus(self) -> List[GPUInfo]:
        try:
            proc = await asyncio.create_subprocess_exec(
                "rocm-smi", "--showmeminfo", "vram",
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
            stdout, _ = await proc.communicate()
        except (OSError, ValueError) as e:
            logger.debug(f"rocm-smi not available: {e}")
            return []

        if proc.returncode == 0:
            # rocm-smi reports bytes on current releases, MB on older ones
            match = re.search(r"Total(?: Memory \(B\))?\s*:\s*(\d+)\s*(MB)?", stdout.decode())
            if match:
                amount = float(match.group(1))
                vram = amount / 1024 if match.group(2) else amount / GB
                return [GPUInfo(name="AMD GPU", vram=round(vram, 1), vendor="AMD")]
        return []

    async def _detect_apple_gpus(self) -> List[GPUInfo]:
        if await self._sysctl("hw.optional.arm64") != "1":
            return await self._detect_intel_mac_gpu()

        brand = await self._sysctl("machdep.cpu.brand_string") or ""
        chip_name = "Apple Silicon GPU"
        for chip in ("M1", "M2", "M3", "M4"):
            if chip in brand:
                chip_name = f"Apple {chip} GPU"
                break

        total_ram, _ = await self._detect_ram()
        if total_ram is None:
            return []
        return [GPUInfo(
            name=chip_name,
            vram=round(total_ram * UNIFIED_MEMORY_GPU_SHARE, 1),
            vendor="Apple",
            discrete=False,
            note="Unified memory (shared with CPU)",
        )]

    async def _detect_intel_mac_gpu(self) -> List[GPUInfo]:
        try:
            proc = await asyncio.create_subprocess_exec(
                "system_profiler", "SPDisplaysDataType", "-json",
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
            stdout, _ = await proc.communicate()
            if proc.returncode != 0:
                return []
            displays = json.loads(stdout.decode()).get("SPDisplaysDataType", [])
        except (OSError, ValueError) as e:
            logger.warning(f"Intel Mac GPU detection failed: {e}")
            return []

        gpus = []
        for display in displays:
            gpu_name = display.get("sppci_model", "Unknown GPU")
            if "Intel" in gpu_name:
                continue  # integrated graphics
            vram = 4.0
            match = re.search(r"(\d+(?:\.\d+)?)\s*(GB|MB)", display.get("spdisplays_vram", ""))
            if match:
                vram = float(match.group(1))
                if match.group(2) == "MB":
                    vram = vram / 1024
            vendor = "AMD" if ("AMD" in gpu_name or "Radeon" in gpu_name) else "Unknown"
            gpus.append(GPUInfo(name=gpu_name, vram=round(vram, 1), vendor=vendor))
        return gpus
