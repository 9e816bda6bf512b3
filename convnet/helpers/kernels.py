# convnet/helpers/kernels.py
# CUDA C sources for AcceleratorBackend. One thread per output element;
# global sizes are rounded up, so every kernel bounds-checks its index.

KERNEL_SOURCE = r"""
extern "C" {

__global__ void fill_zero(float* buffer, const int n)
{
    const int i = blockDim.x * blockIdx.x + threadIdx.x;
    if (i >= n) return;
    buffer[i] = 0.0f;
}

__global__ void relu_forward(float* out, const float* in, const int n)
{
    const int i = blockDim.x * blockIdx.x + threadIdx.x;
    if (i >= n) return;
    out[i] = in[i] > 0.0f ? in[i] : 0.0f;
}

__global__ void relu_backward(float* din, const float* dout, const float* in, const int n)
{
    const int i = blockDim.x * blockIdx.x + threadIdx.x;
    if (i >= n) return;
    din[i] = in[i] > 0.0f ? dout[i] : 0.0f;
}

// one thread per sample
__global__ void softmax_forward(float* out, const float* in, const int n_units, const int batch)
{
    const int b = blockDim.x * blockIdx.x + threadIdx.x;
    if (b >= batch) return;
    const float* x = in + b * n_units;
    float* y = out + b * n_units;

    float max_in = x[0];
    for (int i = 1; i < n_units; i++)
        max_in = fmaxf(max_in, x[i]);

    float sum = 0.0f;
    for (int i = 0; i < n_units; i++) {
        y[i] = expf(x[i] - max_in);
        sum += y[i];
    }
    for (int i = 0; i < n_units; i++)
        y[i] /= sum;
}

__global__ void cross_entropy_gradient(float* delta, const float* probs, const float* targets,
                                       const int n, const float scale)
{
    const int i = blockDim.x * blockIdx.x + threadIdx.x;
    if (i >= n) return;
    delta[i] = scale * (probs[i] - targets[i]);
}

// out[b, o, p] = sum_k W[o, k] * in[b, k, p] + bias[o]
__global__ void linear_forward(float* out, const float* in, const float* weights, const float* biases,
                               const int n_out, const int n_in, const int n_pos, const int batch)
{
    const int i = blockDim.x * blockIdx.x + threadIdx.x;
    if (i >= batch * n_out * n_pos) return;
    const int p = i % n_pos;
    const int o = (i / n_pos) % n_out;
    const int b = i / (n_pos * n_out);

    float sum = biases[o];
    for (int k = 0; k < n_in; k++)
        sum += weights[o * n_in + k] * in[(b * n_in + k) * n_pos + p];
    out[i] = sum;
}

// din[b, k, p] = sum_o W[o, k] * dout[b, o, p]
__global__ void linear_backward(float* din, const float* dout, const float* weights,
                                const int n_out, const int n_in, const int n_pos, const int batch)
{
    const int i = blockDim.x * blockIdx.x + threadIdx.x;
    if (i >= batch * n_in * n_pos) return;
    const int p = i % n_pos;
    const int k = (i / n_pos) % n_in;
    const int b = i / (n_pos * n_in);

    float sum = 0.0f;
    for (int o = 0; o < n_out; o++)
        sum += weights[o * n_in + k] * dout[(b * n_out + o) * n_pos + p];
    din[i] = sum;
}

// one thread per weight; the k == 0 thread of each row also updates the bias
__global__ void momentum_update(float* weights, float* biases, float* weights_velocity, float* biases_velocity,
                                const float* in, const float* dout,
                                const int n_out, const int n_in, const int n_pos, const int batch,
                                const float learning_rate, const float momentum)
{
    const int i = blockDim.x * blockIdx.x + threadIdx.x;
    if (i >= n_out * n_in) return;
    const int o = i / n_in;
    const int k = i % n_in;

    float grad_w = 0.0f;
    float grad_b = 0.0f;
    for (int b = 0; b < batch; b++) {
        for (int p = 0; p < n_pos; p++) {
            const float d = dout[(b * n_out + o) * n_pos + p];
            grad_w += d * in[(b * n_in + k) * n_pos + p];
            grad_b += d;
        }
    }

    weights_velocity[i] = momentum * weights_velocity[i] - learning_rate * grad_w;
    weights[i] += weights_velocity[i];

    if (k == 0) {
        biases_velocity[o] = momentum * biases_velocity[o] - learning_rate * grad_b;
        biases[o] += biases_velocity[o];
    }
}

__global__ void zero_pad(float* padded, const float* in,
                         const int depth, const int height, const int width, const int padding,
                         const int batch)
{
    const int padded_height = height + 2 * padding;
    const int padded_width = width + 2 * padding;
    const int i = blockDim.x * blockIdx.x + threadIdx.x;
    if (i >= batch * depth * padded_height * padded_width) return;

    const int x = i % padded_width - padding;
    const int y = (i / padded_width) % padded_height - padding;
    const int c = (i / (padded_width * padded_height)) % depth;
    const int b = i / (padded_width * padded_height * depth);

    if (x < 0 || x >= width || y < 0 || y >= height)
        padded[i] = 0.0f;
    else
        padded[i] = in[((b * depth + c) * height + y) * width + x];
}

__global__ void im2col(float* patches, const float* padded, const int* lookup_table,
                       const int table_size, const int padded_size, const int batch)
{
    const int i = blockDim.x * blockIdx.x + threadIdx.x;
    if (i >= batch * table_size) return;
    const int b = i / table_size;
    patches[i] = padded[b * padded_size + lookup_table[i % table_size]];
}

// padded_delta must be zeroed first; overlapping fields accumulate
__global__ void col2im(float* padded_delta, const float* patches_delta, const int* lookup_table,
                       const int table_size, const int padded_size, const int batch)
{
    const int i = blockDim.x * blockIdx.x + threadIdx.x;
    if (i >= batch * table_size) return;
    const int b = i / table_size;
    atomicAdd(&padded_delta[b * padded_size + lookup_table[i % table_size]], patches_delta[i]);
}

__global__ void crop_padding(float* din, const float* padded_delta,
                             const int depth, const int height, const int width, const int padding,
                             const int batch)
{
    const int i = blockDim.x * blockIdx.x + threadIdx.x;
    if (i >= batch * depth * height * width) return;
    const int padded_height = height + 2 * padding;
    const int padded_width = width + 2 * padding;

    const int x = i % width;
    const int y = (i / width) % height;
    const int c = (i / (width * height)) % depth;
    const int b = i / (width * height * depth);

    din[i] = padded_delta[((b * depth + c) * padded_height + y + padding) * padded_width + x + padding];
}

}
"""

KERNEL_NAMES = (
    "fill_zero",
    "relu_forward",
    "relu_backward",
    "softmax_forward",
    "cross_entropy_gradient",
    "linear_forward",
    "linear_backward",
    "momentum_update",
    "zero_pad",
    "im2col",
    "col2im",
    "crop_padding",
)
