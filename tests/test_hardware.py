"""
Tests for hardware detection module
"""

from unittest.mock import AsyncMock, MagicMock, mock_open, patch

import pytest

from llm_router.hardware import CPUInfo, GPUInfo, HardwareProfile, HardwareProfiler


class TestHardwareProfiler:
    """Test hardware detection functionality"""

    @pytest.fixture
    def profiler(self):
        return HardwareProfiler()

    @pytest.mark.asyncio
    async def test_detect(self, profiler):
        """Test basic profile detection"""
        with patch.object(profiler, '_detect_cpu', new_callable=AsyncMock) as mock_cpu, \
             patch.object(profiler, '_detect_ram', new_callable=AsyncMock) as mock_ram, \
             patch.object(profiler, '_detect_gpus', new_callable=AsyncMock) as mock_gpus:

            mock_cpu.return_value = CPUInfo(name="Test CPU", cores=4, threads=8, arch="x86_64")
            mock_ram.return_value = (8.0, 5.5)
            mock_gpus.return_value = []

            profile = await profiler.detect()

            assert profile.cpu.name == "Test CPU"
            assert profile.cpu.cores == 4
            assert profile.total_ram_gb == 8.0
            assert profile.available_ram_gb == 5.5
            assert profile.gpus == ()
            assert profile.gpu_detected
            assert profile.vram_gb == 0.0
            assert not profile.has_discrete_gpu
            assert profiler.latest is profile

    @pytest.mark.asyncio
    async def test_detect_is_idempotent(self, profiler):
        """Test two detections with unchanged hardware compare equal"""
        gpu = GPUInfo(name="RTX 4090", vram=24.0, vendor="NVIDIA")
        with patch.object(profiler, '_detect_cpu', new_callable=AsyncMock) as mock_cpu, \
             patch.object(profiler, '_detect_ram', new_callable=AsyncMock) as mock_ram, \
             patch.object(profiler, '_detect_gpus', new_callable=AsyncMock) as mock_gpus:

            mock_cpu.return_value = CPUInfo(name="Test CPU", cores=16, threads=32, arch="x86_64")
            mock_ram.side_effect = [(64.0, 40.1), (64.0, 38.7)]
            mock_gpus.return_value = [gpu]

            first = await profiler.detect()
            second = await profiler.detect()

            assert first == second
            assert first is not second
            assert profiler.latest is second

    @pytest.mark.asyncio
    async def test_detect_cpu_linux(self, profiler):
        """Test CPU detection on Linux"""
        with patch('platform.system', return_value='Linux'), \
             patch('builtins.open', mock_open(read_data='model name\t: Intel Core i7-9700K\n')):

            cpu_info = await profiler._detect_cpu()
            assert "Intel Core i7-9700K" in cpu_info.name

    @pytest.mark.asyncio
    async def test_detect_cpu_macos(self, profiler):
        """Test CPU detection on macOS"""
        with patch('platform.system', return_value='Darwin'), \
             patch('asyncio.create_subprocess_exec') as mock_subprocess:

            mock_process = AsyncMock()
            mock_process.communicate.return_value = (b'Apple M1 Pro\n', b'')
            mock_process.returncode = 0
            mock_subprocess.return_value = mock_process

            cpu_info = await profiler._detect_cpu()
            assert "Apple M1 Pro" in cpu_info.name

    @pytest.mark.asyncio
    async def test_detect_ram_with_psutil(self, profiler):
        """Test RAM detection with psutil"""
        with patch('llm_router.hardware.HAS_PSUTIL', True), \
             patch('psutil.virtual_memory') as mock_memory:

            mock_memory.return_value.total = 16 * 1024**3
            mock_memory.return_value.available = 6 * 1024**3
            total, available = await profiler._detect_ram()
            assert total == 16.0
            assert available == 6.0

    @pytest.mark.asyncio
    async def test_detect_ram_macos_fallback(self, profiler):
        """Test RAM detection on macOS without psutil"""
        with patch('llm_router.hardware.HAS_PSUTIL', False), \
             patch('platform.system', return_value='Darwin'), \
             patch('asyncio.create_subprocess_exec') as mock_subprocess:

            mock_process = AsyncMock()
            mock_process.communicate.return_value = (b'17179869184\n', b'')
            mock_process.returncode = 0
            mock_subprocess.return_value = mock_process

            total, available = await profiler._detect_ram()
            assert total == 16.0
            assert available is None

    @pytest.mark.asyncio
    async def test_detect_ram_linux_fallback(self, profiler):
        """Test RAM detection from /proc/meminfo"""
        meminfo = "MemTotal:       16777216 kB\nMemFree:  1000 kB\nMemAvailable:    8388608 kB\n"
        with patch('llm_router.hardware.HAS_PSUTIL', False), \
             patch('platform.system', return_value='Linux'), \
             patch('builtins.open', mock_open(read_data=meminfo)):

            total, available = await profiler._detect_ram()
            assert total == 16.0
            assert available == 8.0

    @pytest.mark.asyncio
    async def test_detect_ram_failure_is_none(self, profiler):
        """Test RAM detection degrades to None instead of raising"""
        with patch('llm_router.hardware.HAS_PSUTIL', False), \
             patch('platform.system', return_value='Windows'):

            assert await profiler._detect_ram() == (None, None)

    @pytest.mark.asyncio
    async def test_detect_nvidia_gpus(self, profiler):
        """Test NVIDIA GPU detection"""
        with patch('llm_router.hardware.HAS_GPUTIL', True), \
             patch('llm_router.hardware.GPUtil', create=True) as mock_gputil:

            mock_gpu = MagicMock()
            mock_gpu.name = "NVIDIA GeForce RTX 3080"
            mock_gpu.memoryTotal = 10240
            mock_gpu.driver = "460.89"
            mock_gputil.getGPUs.return_value = [mock_gpu]

            gpus = await profiler._detect_nvidia_gputil()
            assert len(gpus) == 1
            assert gpus[0].name == "NVIDIA GeForce RTX 3080"
            assert gpus[0].vram == 10.0
            assert gpus[0].vendor == "NVIDIA"
            assert gpus[0].driver == "460.89"

    @pytest.mark.asyncio
    async def test_detect_nvidia_smi(self, profiler):
        """Test nvidia-smi CSV parsing"""
        with patch('asyncio.create_subprocess_exec') as mock_subprocess:
            mock_process = AsyncMock()
            mock_process.communicate.return_value = (b'NVIDIA RTX A6000, 49140\n', b'')
            mock_process.returncode = 0
            mock_subprocess.return_value = mock_process

            gpus = await profiler._detect_nvidia_smi()
            assert gpus == [GPUInfo(name="NVIDIA RTX A6000", vram=48.0, vendor="NVIDIA")]

    @pytest.mark.asyncio
    async def test_nvidia_smi_missing(self, profiler):
        """Test a missing nvidia-smi binary yields no GPUs"""
        with patch('asyncio.create_subprocess_exec', side_effect=FileNotFoundError("nvidia-smi")):
            assert await profiler._detect_nvidia_smi() == []

    @pytest.mark.asyncio
    async def test_detect_apple_silicon_gpu(self, profiler):
        """Test Apple Silicon GPU detection"""
        with patch('platform.system', return_value='Darwin'), \
             patch('asyncio.create_subprocess_exec') as mock_subprocess:

            mock_process1 = AsyncMock()
            mock_process1.communicate.return_value = (b'1\n', b'')
            mock_process1.returncode = 0

            mock_process2 = AsyncMock()
            mock_process2.communicate.return_value = (b'Apple M1 Pro\n', b'')
            mock_process2.returncode = 0

            mock_subprocess.side_effect = [mock_process1, mock_process2]
            profiler._detect_ram = AsyncMock(return_value=(16.0, 9.0))

            gpus = await profiler._detect_apple_gpus()
            assert len(gpus) == 1
            assert "Apple M1 GPU" in gpus[0].name
            assert gpus[0].vendor == "Apple"
            assert gpus[0].vram == 12.0
            assert not gpus[0].discrete

    @pytest.mark.asyncio
    async def test_gpu_probe_failure_is_isolated(self, profiler):
        """Test one failing GPU probe does not hide the others"""
        gpu = GPUInfo(name="NVIDIA GeForce RTX 3080", vram=10.0, vendor="NVIDIA")
        with patch('platform.system', return_value='Linux'), \
             patch('llm_router.hardware.HAS_GPUTIL', False), \
             patch.object(profiler, '_detect_nvidia_smi', new_callable=AsyncMock) as mock_smi, \
             patch.object(profiler, '_detect_amd_gpus', new_callable=AsyncMock) as mock_amd:

            mock_smi.return_value = [gpu, gpu]
            mock_amd.side_effect = RuntimeError("rocm exploded")

            gpus = await profiler._detect_gpus()
            assert gpus == [gpu]

    @pytest.mark.asyncio
    async def test_all_gpu_detectors_failing(self, profiler):
        """Test GPU detection where every method failed is unknown, not empty"""
        with patch('platform.system', return_value='Linux'), \
             patch('llm_router.hardware.HAS_GPUTIL', False), \
             patch.object(profiler, '_detect_nvidia_smi', new_callable=AsyncMock) as mock_smi, \
             patch.object(profiler, '_detect_amd_gpus', new_callable=AsyncMock) as mock_amd:

            mock_smi.side_effect = RuntimeError("driver mismatch")
            mock_amd.side_effect = RuntimeError("rocm exploded")

            assert await profiler._detect_gpus() is None

    @pytest.mark.asyncio
    async def test_failed_gpu_detection_profile(self, profiler):
        """Test a failed GPU reading leaves VRAM unknown"""
        with patch.object(profiler, '_detect_cpu', new_callable=AsyncMock) as mock_cpu, \
             patch.object(profiler, '_detect_ram', new_callable=AsyncMock) as mock_ram, \
             patch.object(profiler, '_detect_gpus', new_callable=AsyncMock) as mock_gpus:

            mock_cpu.return_value = CPUInfo(name="Test CPU", cores=4, threads=8, arch="x86_64")
            mock_ram.return_value = (32.0, 20.0)
            mock_gpus.return_value = None

            profile = await profiler.detect()

            assert profile.gpus == ()
            assert not profile.gpu_detected
            assert profile.vram_gb is None
            assert profile.to_dict()["gpu_detected"] is False


class TestOverride:
    """Test manual hardware override"""

    def test_override_requires_detection(self):
        """Test override before detect() fails"""
        with pytest.raises(RuntimeError):
            HardwareProfiler().override(total_ram_gb=32.0)

    @pytest.mark.asyncio
    async def test_override_and_clear(self, profile_16gb):
        """Test override layers values and clear re-detects"""
        profiler = HardwareProfiler()
        with patch.object(profiler, 'detect', new_callable=AsyncMock) as mock_detect:
            mock_detect.return_value = profile_16gb
            profiler._detected = profile_16gb
            profiler._latest = profile_16gb

            overridden = profiler.override(total_ram_gb=64.0)
            assert overridden.source == "manual"
            assert overridden.total_ram_gb == 64.0
            assert overridden.cpu == profile_16gb.cpu
            assert profiler.latest is overridden

            cleared = await profiler.clear_override()
            assert cleared is profile_16gb

    def test_override_gpus_marks_detected(self, profile_16gb):
        """Test overriding GPUs replaces a failed GPU reading"""
        profiler = HardwareProfiler()
        profiler._detected = HardwareProfile(
            os="Linux", arch="x86_64", cpu=profile_16gb.cpu, total_ram_gb=16.0, gpu_detected=False,
        )

        overridden = profiler.override(gpus=())
        assert overridden.gpu_detected
        assert overridden.vram_gb == 0.0


class TestDataClasses:
    """Test data classes"""

    def test_profile_properties(self, profile_16gb):
        """Test derived GPU properties"""
        assert profile_16gb.has_discrete_gpu
        assert profile_16gb.vram_gb == 10.0
        assert profile_16gb.primary_gpu.name == "NVIDIA GeForce RTX 3080"

    def test_profile_to_dict(self, profile_16gb):
        """Test profile serialization"""
        data = profile_16gb.to_dict()
        assert data["total_ram_gb"] == 16.0
        assert data["gpus"][0]["vendor"] == "NVIDIA"
        assert data["source"] == "auto-detected"

    def test_profiles_frozen(self, profile_16gb):
        """Test profiles cannot be mutated in place"""
        with pytest.raises(Exception):
            profile_16gb.total_ram_gb = 32.0

    def test_equality_ignores_volatile_fields(self):
        """Test free RAM and capture time do not affect equality"""
        cpu = CPUInfo(name="CPU", cores=4, threads=4, arch="arm64")
        a = HardwareProfile(os="Darwin", arch="arm64", cpu=cpu, total_ram_gb=8.0, available_ram_gb=1.0)
        b = HardwareProfile(os="Darwin", arch="arm64", cpu=cpu, total_ram_gb=8.0, available_ram_gb=3.0)
        assert a == b
